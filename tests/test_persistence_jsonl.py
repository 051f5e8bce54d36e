# tests/test_persistence_jsonl.py
from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path

import pytest

from guidance_policy.adapters.persistence import (
    append_jsonl,
    events_by_ids,
    events_for_learner,
    flow_events,
    read_events,
    read_jsonl,
    read_trace,
    save_event,
    write_trace,
)
from guidance_policy.contracts import DuplicateEventError, EventKind, FlowKey, InteractionEvent, Strategy
from guidance_policy.replay import replay_trace


def test_append_and_read_jsonl_roundtrip(tmp_path: Path) -> None:
    p = tmp_path / "events.jsonl"

    append_jsonl(p, {"kind": "x", "n": 1})
    append_jsonl(p, {"kind": "x", "n": 2})

    rows = [rec for _, rec in read_jsonl(p)]
    assert rows == [{"kind": "x", "n": 1}, {"kind": "x", "n": 2}]

    # sanity: file is valid json-per-line
    for ln in p.read_text(encoding="utf-8").splitlines():
        json.loads(ln)


def test_read_jsonl_reports_bad_line_number(tmp_path: Path) -> None:
    p = tmp_path / "events.jsonl"
    p.write_text('{"ok": 1}\n{not json\n', encoding="utf-8")
    with pytest.raises(ValueError, match="line 2"):
        list(read_jsonl(p))

    p.write_text('{"ok": 1}\n[1, 2]\n', encoding="utf-8")
    with pytest.raises(ValueError, match="line 2"):
        list(read_jsonl(p))


def test_save_event_rejects_duplicate_ids(tmp_path: Path, make_event: Callable[..., InteractionEvent]) -> None:
    p = tmp_path / "events.jsonl"
    event = make_event(timestamp=0, event_id="evt-a")

    ref = save_event(p, event)
    assert ref == {"kind": "jsonl", "ref": "events.jsonl@1"}

    with pytest.raises(DuplicateEventError):
        save_event(p, event)
    assert len(p.read_text(encoding="utf-8").splitlines()) == 1
    assert read_events(p) == [event]


def test_read_events_on_missing_log_is_empty(tmp_path: Path) -> None:
    assert read_events(tmp_path / "nope.jsonl") == []


def test_event_queries(tmp_path: Path, make_event: Callable[..., InteractionEvent]) -> None:
    p = tmp_path / "events.jsonl"
    events = [
        make_event(EventKind.ERROR, timestamp=0, event_id="a1"),
        make_event(EventKind.HINT_VIEW, timestamp=1, event_id="a2", help_request_index=1, hint_level=1),
        make_event(EventKind.ERROR, timestamp=2, event_id="a3", session_id="session-2"),
        make_event(EventKind.ERROR, timestamp=3, event_id="b1", learner_id="learner-2"),
    ]
    for event in events:
        save_event(p, event)

    assert [e.event_id for e in events_for_learner(p, "learner-1")] == ["a1", "a2", "a3"]
    assert [e.event_id for e in events_by_ids(p, {"b1", "a2", "zz"})] == ["a2", "b1"]

    session_flow = FlowKey(learner_id="learner-1", session_id="session-1", problem_id="problem-1")
    assert [e.event_id for e in flow_events(p, session_flow)] == ["a1", "a2"]

    any_session = FlowKey(learner_id="learner-1", problem_id="problem-1")
    assert [e.event_id for e in flow_events(p, any_session)] == ["a1", "a2", "a3"]


def test_trace_file_roundtrip_keeps_infinite_thresholds(
    tmp_path: Path,
    make_event: Callable[..., InteractionEvent],
) -> None:
    trace = replay_trace([make_event(timestamp=0), make_event(timestamp=10)], Strategy.HINT_ONLY)
    out = write_trace(tmp_path / "traces" / "hint-only.json", trace)

    raw = json.loads(out.read_text(encoding="utf-8"))
    assert raw["thresholds"] == {"escalate": "Infinity", "aggregate": "Infinity"}
    assert raw["checksum"] == trace.checksum

    assert read_trace(out) == trace
