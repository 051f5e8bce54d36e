from __future__ import annotations

from collections.abc import Callable

from guidance_policy.contracts import EventKind, InteractionEvent, Strategy
from guidance_policy.invariants import (
    REGISTRY,
    Flow,
    InvariantCheckContext,
    InvariantId,
    Validity,
    check_event_id_uniqueness,
    check_help_index_monotonic,
    check_policy_stamp_completeness,
    check_replay_determinism,
    run_checkers,
    to_audit_result,
)
from guidance_policy.replay import replay


def test_registry_covers_every_invariant() -> None:
    assert set(REGISTRY) == set(InvariantId)


def test_event_id_uniqueness_pass_and_fail(make_event: Callable[..., InteractionEvent]) -> None:
    clean = check_event_id_uniqueness(
        InvariantCheckContext(scope="log", events=(make_event(timestamp=0), make_event(timestamp=1)))
    )
    assert clean.passed is True
    assert clean.flow is Flow.CONTINUE
    assert clean.code == "event_ids_unique"

    dup = make_event(timestamp=0, event_id="same")
    failing = check_event_id_uniqueness(InvariantCheckContext(scope="log", events=(dup, dup)))
    assert failing.invariant_id is InvariantId.EVENT_ID_UNIQUENESS
    assert failing.passed is False
    assert failing.flow is Flow.STOP
    assert failing.validity is Validity.INVALID
    assert isinstance(failing.evidence, tuple)
    assert failing.details["duplicates"] == ["same"]


def test_help_index_must_increase_per_flow(make_event: Callable[..., InteractionEvent]) -> None:
    ok = (
        make_event(EventKind.HINT_VIEW, timestamp=1, help_request_index=1),
        make_event(EventKind.HINT_VIEW, timestamp=2, help_request_index=2),
        make_event(EventKind.HINT_VIEW, timestamp=3, help_request_index=1, problem_id="problem-2"),
    )
    assert check_help_index_monotonic(InvariantCheckContext(scope="log", events=ok)).passed

    regressed = ok + (make_event(EventKind.EXPLANATION_VIEW, timestamp=4, help_request_index=2),)
    outcome = check_help_index_monotonic(InvariantCheckContext(scope="log", events=regressed))
    assert outcome.passed is False
    assert outcome.code == "help_index_regression"
    assert outcome.evidence[0]["previous_index"] == 2


def test_replay_determinism_compares_checksums() -> None:
    single = check_replay_determinism(InvariantCheckContext(scope="r", replay_checksums=("sha256:a",)))
    assert single.passed and single.code == "determinism_not_applicable"

    same = check_replay_determinism(InvariantCheckContext(scope="r", replay_checksums=("sha256:a", "sha256:a")))
    assert same.passed and same.code == "replay_reproduced"

    diverged = check_replay_determinism(InvariantCheckContext(scope="r", replay_checksums=("sha256:a", "sha256:b")))
    assert diverged.passed is False
    assert diverged.code == "replay_diverged"


def test_policy_stamps_degrade_when_missing(make_event: Callable[..., InteractionEvent]) -> None:
    points = replay([make_event(timestamp=0)], Strategy.ADAPTIVE_MEDIUM)
    assert check_policy_stamp_completeness(InvariantCheckContext(scope="r", replay_points=tuple(points))).passed

    unstamped = (points[0].model_copy(update={"policy_version": ""}),)
    outcome = check_policy_stamp_completeness(InvariantCheckContext(scope="r", replay_points=unstamped))
    assert outcome.passed is False
    assert outcome.flow is Flow.CONTINUE
    assert outcome.validity is Validity.DEGRADED


def test_audit_result_is_plain_strings(make_event: Callable[..., InteractionEvent]) -> None:
    outcomes = run_checkers(InvariantCheckContext(scope="log", events=(make_event(timestamp=0),)))
    results = [to_audit_result(o) for o in outcomes]
    assert [r.invariant_id for r in results] == [
        "event_id_uniqueness.v1",
        "help_index_monotonic.v1",
        "replay_determinism.v1",
        "policy_stamp_completeness.v1",
    ]
    assert all(r.flow == "continue" and r.validity == "valid" for r in results)
