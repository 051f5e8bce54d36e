# guidance_policy/stable_ids.py
from __future__ import annotations

import hashlib
import json
import re
from typing import Any

from pydantic import BaseModel

from guidance_policy.contracts import EventKind, FlowKey

SYNTHETIC_FALLBACK_ROW_ID = "sql-engage:fallback-synthetic"
DEFAULT_SUBTYPE_LABEL = "incomplete query"

_HASH_MODULUS = 2**32


def rolling_hash(s: str) -> int:
    """
    Polynomial rolling hash (base 31, mod 2**32) used for content-row selection.
    Stable across processes, unlike the builtin ``hash``.
    """
    h = 0
    for ch in s:
        h = (h * 31 + ord(ch)) % _HASH_MODULUS
    return h


def _sha256_hex(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


def _jsonable(obj: Any) -> Any:
    if isinstance(obj, BaseModel):
        return obj.model_dump(mode="json")
    if isinstance(obj, dict):
        return {str(k): _jsonable(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_jsonable(v) for v in obj]
    return obj


def canonical_json(obj: Any) -> str:
    """
    Canonical JSON string (stable across runs) for hashing.
    """
    return json.dumps(_jsonable(obj), sort_keys=True, ensure_ascii=False, separators=(",", ":"))


def checksum(obj: Any) -> str:
    return "sha256:" + _sha256_hex(canonical_json(obj))


def _sanitize_part(part: str) -> str:
    cleaned = re.sub(r"\s+", "-", part.strip())
    cleaned = re.sub(r"[^a-zA-Z0-9._-]", "-", cleaned)
    return re.sub(r"-+", "-", cleaned).strip("-")


def derive_help_event_id(
    *,
    flow_key: FlowKey,
    kind: EventKind,
    help_request_index: int,
    sequence: int,
) -> str:
    """
    Deterministic id for a proposed help event. Unique per flow because
    (kind, index) is registered at most once per flow lifetime.
    """
    prefix = "hint" if kind == EventKind.HINT_VIEW else "explanation"
    key_obj = {
        "flow": flow_key.scope_key(),
        "kind": kind.value,
        "help_request_index": help_request_index,
        "sequence": sequence,
    }
    return f"{prefix}_{_sha256_hex(canonical_json(key_obj))}"


def derive_note_id(*, flow_key: FlowKey, trigger_event_id: str, subtype: str) -> str:
    key_obj = {"flow": flow_key.scope_key(), "trigger": trigger_event_id, "subtype": subtype}
    return "note_" + _sha256_hex(canonical_json(key_obj))


def derive_content_event_id(*, note_id: str, kind: EventKind) -> str:
    return f"{_sanitize_part(kind.value)}_{_sha256_hex(canonical_json({'note_id': note_id, 'kind': kind.value}))}"


def stable_hint_id(*, subtype: str, hint_level: int, row_id: str) -> str:
    subtype_part = subtype.strip() or DEFAULT_SUBTYPE_LABEL
    row_part = row_id.strip() or SYNTHETIC_FALLBACK_ROW_ID
    return f"sql-engage:{subtype_part}:L{hint_level}:{row_part}"


def stable_explanation_id(*, subtype: str, row_id: str) -> str:
    subtype_part = subtype.strip() or DEFAULT_SUBTYPE_LABEL
    row_part = row_id.strip() or SYNTHETIC_FALLBACK_ROW_ID
    return f"sql-engage:{subtype_part}:explain:{row_part}"
