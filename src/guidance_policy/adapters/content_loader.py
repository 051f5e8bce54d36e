# guidance_policy/adapters/content_loader.py
from __future__ import annotations

import csv
import logging
from functools import lru_cache
from pathlib import Path
from typing import List, Union

from guidance_policy.content import CONTENT_POLICY_VERSION, ContentSet
from guidance_policy.contracts import ContentRow, ContentSetLoadError

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

REQUIRED_COLUMNS = (
    "query",
    "error_type",
    "error_subtype",
    "emotion",
    "feedback_target",
    "intended_learning_outcome",
)

BUNDLED_CONTENT_PATH = Path(__file__).resolve().parent.parent / "data" / "sql_engage_sample.csv"


def _cell(record: dict[str, str | None], column: str) -> str:
    return (record.get(column) or "").strip()


def load_content_rows(path: PathLike) -> List[ContentRow]:
    """
    Parse an SQL-Engage style CSV. Row ids carry the 1-based file line of the
    record (the header is line 1). A file missing any required column yields
    no rows.
    """
    p = Path(path)
    try:
        with p.open("r", encoding="utf-8", newline="") as f:
            reader = csv.DictReader(f)
            header = [h.strip() for h in (reader.fieldnames or [])]
            missing = [c for c in REQUIRED_COLUMNS if c not in header]
            if missing:
                logger.warning("content file %s lacks columns %s, loading nothing", p, ", ".join(missing))
                return []
            reader.fieldnames = header
            rows = [
                ContentRow(
                    row_id=f"sql-engage:{offset + 2}",
                    **{column: _cell(record, column) for column in REQUIRED_COLUMNS},
                )
                for offset, record in enumerate(reader)
            ]
    except OSError as exc:
        raise ContentSetLoadError(f"cannot read content file {p}: {exc}") from exc

    logger.debug("loaded %d content rows from %s", len(rows), p)
    return rows


def load_content_set(path: PathLike | None = None, *, policy_version: str = CONTENT_POLICY_VERSION) -> ContentSet:
    if path is None:
        return load_default_content_set()
    return ContentSet(load_content_rows(path), policy_version=policy_version)


@lru_cache(maxsize=1)
def load_default_content_set() -> ContentSet:
    return ContentSet(load_content_rows(BUNDLED_CONTENT_PATH))


@lru_cache(maxsize=8)
def _load_content_set_cached(path: Path, policy_version: str) -> ContentSet:
    return load_content_set(path, policy_version=policy_version)


def load_configured_content_set(
    path: PathLike | None = None, *, policy_version: str = CONTENT_POLICY_VERSION
) -> ContentSet:
    """Content set for ``path`` (the bundled sample when ``None``), parsed once per path."""
    if path is None:
        return load_default_content_set()
    return _load_content_set_cached(Path(path).resolve(), policy_version)
