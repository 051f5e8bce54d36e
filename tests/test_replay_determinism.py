from __future__ import annotations

from collections.abc import Callable

from guidance_policy.contracts import DecisionKind, EventKind, InteractionEvent, RuleFired, Strategy
from guidance_policy.engine import POLICY_SEMANTICS_VERSION
from guidance_policy.content import CONTENT_POLICY_VERSION
from guidance_policy.invariants import InvariantId
from guidance_policy.replay import audit_replay, compare_strategies, replay, replay_trace
from guidance_policy.stable_ids import canonical_json

E = EventKind.ERROR
H = EventKind.HINT_VIEW
RUN = EventKind.EXECUTION


def _slice(make_trace: Callable[..., list[InteractionEvent]]) -> list[InteractionEvent]:
    return make_trace((RUN, 0), (E, 1_000), (E, 2_000), (H, 2_500), (E, 3_000), (RUN, 4_000))


def test_replay_twice_is_byte_identical(make_trace: Callable[..., list[InteractionEvent]]) -> None:
    events = _slice(make_trace)
    first = replay_trace(events, Strategy.ADAPTIVE_MEDIUM)
    second = replay_trace(events, Strategy.ADAPTIVE_MEDIUM)
    assert canonical_json(first) == canonical_json(second)
    assert first.checksum == second.checksum
    assert first.checksum.startswith("sha256:")


def test_one_point_per_policy_event_in_time_order(
    make_event: Callable[..., InteractionEvent],
) -> None:
    events = [
        make_event(E, timestamp=3_000, event_id="late"),
        make_event(EventKind.CODE_CHANGE, timestamp=500, event_id="edit"),
        make_event(RUN, timestamp=1_000, event_id="tie-a"),
        make_event(E, timestamp=1_000, event_id="tie-b"),
    ]
    points = replay(events, Strategy.ADAPTIVE_MEDIUM)
    assert [p.event_id for p in points] == ["tie-a", "tie-b", "late"]
    assert [p.index for p in points] == [1, 2, 3]


def test_points_evaluate_at_event_time(make_trace: Callable[..., list[InteractionEvent]]) -> None:
    points = replay(_slice(make_trace), Strategy.ADAPTIVE_MEDIUM)
    assert [p.context.elapsed_ms for p in points] == [0, 1_000, 2_000, 2_500, 3_000, 4_000]
    assert [p.context.error_count for p in points] == [0, 1, 2, 2, 3, 3]
    assert points[0].rule_fired is RuleFired.NO_ERRORS
    assert points[-1].rule_fired is RuleFired.ESCALATION_THRESHOLD
    assert points[-1].decision is DecisionKind.PRESENT_EXPLANATION
    assert all(p.policy_semantics_version == POLICY_SEMANTICS_VERSION for p in points)
    assert all(p.policy_version == CONTENT_POLICY_VERSION for p in points)


def test_strategies_diverge(make_trace: Callable[..., list[InteractionEvent]]) -> None:
    events = _slice(make_trace)
    medium = replay_trace(events, Strategy.ADAPTIVE_MEDIUM)
    hint_only = replay_trace(events, Strategy.HINT_ONLY)
    assert medium.checksum != hint_only.checksum
    assert all(p.decision is not DecisionKind.PRESENT_EXPLANATION for p in hint_only.points)


def test_learner_filter_keeps_histories_apart(make_event: Callable[..., InteractionEvent]) -> None:
    events = [
        make_event(E, timestamp=0, learner_id="a"),
        make_event(E, timestamp=1, learner_id="b"),
        make_event(E, timestamp=2, learner_id="a"),
    ]
    only_a = replay(events, Strategy.ADAPTIVE_MEDIUM, learner_id="a")
    assert [p.learner_id for p in only_a] == ["a", "a"]
    assert [p.context.error_count for p in only_a] == [1, 2]

    mixed = replay(events, Strategy.ADAPTIVE_MEDIUM)
    assert [p.context.error_count for p in mixed] == [1, 1, 2]


def test_compare_strategies_summarizes_every_strategy(make_trace: Callable[..., list[InteractionEvent]]) -> None:
    events = _slice(make_trace)
    summaries = compare_strategies(events)
    assert set(summaries) == {s.value for s in Strategy}

    medium = summaries[Strategy.ADAPTIVE_MEDIUM.value]
    assert medium.total_points == 6
    assert sum(medium.decisions.values()) == 6
    assert medium.rules["escalation-threshold-met"] == 2
    assert medium.checksum == replay_trace(events, Strategy.ADAPTIVE_MEDIUM).checksum


def test_audit_passes_on_clean_slice(make_trace: Callable[..., list[InteractionEvent]]) -> None:
    audit = audit_replay(_slice(make_trace), Strategy.ADAPTIVE_MEDIUM)
    assert audit.passed
    assert [r.invariant_id for r in audit.invariants] == [i.value for i in InvariantId]


def test_audit_flags_duplicate_event_ids(make_event: Callable[..., InteractionEvent]) -> None:
    events = [make_event(E, timestamp=0, event_id="dup"), make_event(E, timestamp=1, event_id="dup")]
    audit = audit_replay(events, Strategy.ADAPTIVE_MEDIUM)
    assert not audit.passed
    failed = {r.invariant_id: r for r in audit.invariants if not r.passed}
    assert set(failed) == {InvariantId.EVENT_ID_UNIQUENESS.value}
    assert failed[InvariantId.EVENT_ID_UNIQUENESS.value].evidence == [{"kind": "event_id", "value": "dup"}]
