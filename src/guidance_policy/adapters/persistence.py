# guidance_policy/adapters/persistence.py
from __future__ import annotations

import json
from collections.abc import Collection
from dataclasses import asdict, is_dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, List, Tuple, Union

from pydantic import BaseModel, ValidationError

from guidance_policy.contracts import DuplicateEventError, FlowKey, InteractionEvent, ReplayTrace

JsonObj = Dict[str, Any]
PathLike = Union[str, Path]

EVENTS_LOG_PATH = Path("artifacts/events.jsonl")


def _to_jsonable(x: Any) -> Any:
    if x is None:
        return None
    if isinstance(x, BaseModel):
        return x.model_dump(mode="json")
    if is_dataclass(x) and not isinstance(x, type):
        return asdict(x)
    if isinstance(x, dict):
        return {str(k): _to_jsonable(v) for k, v in x.items()}
    if isinstance(x, (list, tuple)):
        return [_to_jsonable(v) for v in x]
    return x


def append_jsonl(path: PathLike, record: Any) -> None:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    obj = _to_jsonable(record)

    # enforce "one JSON object per line"
    line = json.dumps(obj, ensure_ascii=False)
    with p.open("a", encoding="utf-8") as f:
        f.write(line + "\n")


def read_jsonl(path: PathLike) -> Iterator[Tuple[JsonObj, JsonObj]]:
    """
    Yields (meta, obj) for each JSON object line.
    - meta includes line number and source path.
    - obj is the parsed dict.
    """
    p = Path(path)
    with p.open("r", encoding="utf-8") as f:
        for lineno, line in enumerate(f, start=1):
            s = line.strip()
            if not s:
                continue
            try:
                obj = json.loads(s)
            except json.JSONDecodeError as exc:
                raise ValueError(f"Malformed JSON on line {lineno} of {p}: {exc.msg}") from exc
            if not isinstance(obj, dict):
                raise ValueError(f"Expected JSON object on line {lineno}, got {type(obj).__name__}")
            meta: JsonObj = {"path": str(p), "lineno": lineno}
            yield meta, obj


# ------------------------------------------------------------------------------
# Interaction event log
# ------------------------------------------------------------------------------


def read_events(path: PathLike = EVENTS_LOG_PATH) -> List[InteractionEvent]:
    """Events in log order. A missing log reads as empty."""
    p = Path(path)
    if not p.exists():
        return []
    events: List[InteractionEvent] = []
    for meta, raw in read_jsonl(p):
        try:
            events.append(InteractionEvent.model_validate(raw))
        except ValidationError as exc:
            raise ValueError(f"Invalid interaction event on line {meta['lineno']} of {p}") from exc
    return events


def save_event(path: PathLike, event: InteractionEvent) -> JsonObj:
    """
    Append one event. The log is append-only and event ids are unique across
    it, so re-saving an id raises instead of writing a second line.
    """
    p = Path(path)
    existing = read_events(p)
    if any(e.event_id == event.event_id for e in existing):
        raise DuplicateEventError(f"event {event.event_id!r} already recorded in {p.name}")

    append_jsonl(p, event)
    return {"kind": "jsonl", "ref": f"{p.name}@{len(existing) + 1}"}


def save_events(path: PathLike, events: Collection[InteractionEvent]) -> List[JsonObj]:
    return [save_event(path, event) for event in events]


def events_for_learner(path: PathLike, learner_id: str) -> List[InteractionEvent]:
    return [e for e in read_events(path) if e.learner_id == learner_id]


def events_by_ids(path: PathLike, event_ids: Collection[str]) -> List[InteractionEvent]:
    wanted = set(event_ids)
    return [e for e in read_events(path) if e.event_id in wanted]


def flow_events(path: PathLike, flow_key: FlowKey) -> List[InteractionEvent]:
    return [e for e in read_events(path) if flow_key.contains(e)]


# ------------------------------------------------------------------------------
# Replay traces
# ------------------------------------------------------------------------------


def write_trace(path: PathLike, trace: ReplayTrace) -> Path:
    """Write a trace as one pretty JSON document (overwrites)."""
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(json.dumps(_to_jsonable(trace), ensure_ascii=False, indent=2) + "\n", encoding="utf-8")
    return p


def read_trace(path: PathLike) -> ReplayTrace:
    p = Path(path)
    return ReplayTrace.model_validate(json.loads(p.read_text(encoding="utf-8")))
