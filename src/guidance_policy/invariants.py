# guidance_policy/invariants.py
from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional, Protocol, Sequence

from guidance_policy.contracts import (
    HELP_EVENT_KINDS,
    InteractionEvent,
    InvariantAuditResult,
    ReplayDecisionPoint,
    StrEnum,
)


class InvariantId(StrEnum):
    EVENT_ID_UNIQUENESS = "event_id_uniqueness.v1"
    HELP_INDEX_MONOTONIC = "help_index_monotonic.v1"
    REPLAY_DETERMINISM = "replay_determinism.v1"
    POLICY_STAMP_COMPLETENESS = "policy_stamp_completeness.v1"


class Flow(StrEnum):
    CONTINUE = "continue"
    STOP = "stop"


class Validity(StrEnum):
    VALID = "valid"
    DEGRADED = "degraded"
    INVALID = "invalid"


@dataclass(frozen=True)
class InvariantOutcome:
    invariant_id: InvariantId
    passed: bool
    reason: str
    flow: Flow
    validity: Validity
    code: str
    evidence: Sequence[Mapping[str, Any]] = field(default_factory=tuple)
    details: Mapping[str, Any] = field(default_factory=dict)


class CheckContext(Protocol):
    scope: str
    events: Sequence[InteractionEvent]
    replay_points: Sequence[ReplayDecisionPoint]
    replay_checksums: Sequence[str]


@dataclass(frozen=True)
class InvariantCheckContext:
    scope: str
    events: Sequence[InteractionEvent] = field(default_factory=tuple)
    replay_points: Sequence[ReplayDecisionPoint] = field(default_factory=tuple)
    replay_checksums: Sequence[str] = field(default_factory=tuple)


Checker = Callable[[CheckContext], InvariantOutcome]


def _ok(invariant_id: InvariantId, code: str, details: Optional[Mapping[str, Any]] = None) -> InvariantOutcome:
    detail_map = dict(details or {})
    reason = str(detail_map.get("message") or code)
    return InvariantOutcome(
        invariant_id=invariant_id,
        passed=True,
        reason=reason,
        flow=Flow.CONTINUE,
        validity=Validity.VALID,
        code=code,
        details=detail_map,
    )


def check_event_id_uniqueness(ctx: CheckContext) -> InvariantOutcome:
    counts = Counter(e.event_id for e in ctx.events)
    duplicates = sorted(event_id for event_id, n in counts.items() if n > 1)
    if not duplicates:
        return _ok(InvariantId.EVENT_ID_UNIQUENESS, "event_ids_unique", {"event_count": len(ctx.events)})

    return InvariantOutcome(
        invariant_id=InvariantId.EVENT_ID_UNIQUENESS,
        passed=False,
        reason="Event log contains repeated event ids.",
        flow=Flow.STOP,
        validity=Validity.INVALID,
        code="duplicate_event_ids",
        evidence=tuple({"kind": "event_id", "value": event_id} for event_id in duplicates),
        details={"message": "Event log contains repeated event ids.", "duplicates": duplicates},
    )


def check_help_index_monotonic(ctx: CheckContext) -> InvariantOutcome:
    last_seen: dict[tuple[str, str, str], int] = {}
    violations: list[dict[str, Any]] = []
    ordered = sorted(ctx.events, key=lambda e: e.timestamp)
    for event in ordered:
        if event.kind not in HELP_EVENT_KINDS or event.help_request_index is None:
            continue
        flow = (event.learner_id, event.session_id or "no-session", event.problem_id)
        previous = last_seen.get(flow)
        if previous is not None and event.help_request_index <= previous:
            violations.append(
                {
                    "kind": "event_id",
                    "value": event.event_id,
                    "help_request_index": event.help_request_index,
                    "previous_index": previous,
                }
            )
        last_seen[flow] = max(event.help_request_index, previous or 0)

    if not violations:
        return _ok(InvariantId.HELP_INDEX_MONOTONIC, "help_indices_increasing", {"flows": len(last_seen)})

    return InvariantOutcome(
        invariant_id=InvariantId.HELP_INDEX_MONOTONIC,
        passed=False,
        reason="Help-request indices repeat or go backwards within a flow.",
        flow=Flow.STOP,
        validity=Validity.INVALID,
        code="help_index_regression",
        evidence=tuple(violations),
        details={"message": "Help-request indices repeat or go backwards within a flow.", "violations": len(violations)},
    )


def check_replay_determinism(ctx: CheckContext) -> InvariantOutcome:
    distinct = sorted(set(ctx.replay_checksums))
    if len(ctx.replay_checksums) < 2:
        return _ok(InvariantId.REPLAY_DETERMINISM, "determinism_not_applicable")
    if len(distinct) == 1:
        return _ok(InvariantId.REPLAY_DETERMINISM, "replay_reproduced", {"checksum": distinct[0]})

    return InvariantOutcome(
        invariant_id=InvariantId.REPLAY_DETERMINISM,
        passed=False,
        reason="Replaying the same slice produced different traces.",
        flow=Flow.STOP,
        validity=Validity.INVALID,
        code="replay_diverged",
        evidence=tuple({"kind": "checksum", "value": c} for c in distinct),
        details={"message": "Replaying the same slice produced different traces.", "checksums": distinct},
    )


def check_policy_stamp_completeness(ctx: CheckContext) -> InvariantOutcome:
    unstamped = [p.event_id for p in ctx.replay_points if not p.policy_version or not p.policy_semantics_version]
    if not unstamped:
        return _ok(InvariantId.POLICY_STAMP_COMPLETENESS, "policy_stamps_present", {"points": len(ctx.replay_points)})

    return InvariantOutcome(
        invariant_id=InvariantId.POLICY_STAMP_COMPLETENESS,
        passed=False,
        reason="Replay decision points are missing policy version stamps.",
        flow=Flow.CONTINUE,
        validity=Validity.DEGRADED,
        code="policy_stamp_missing",
        evidence=tuple({"kind": "event_id", "value": event_id} for event_id in unstamped),
        details={"message": "Replay decision points are missing policy version stamps."},
    )


REGISTRY: dict[InvariantId, Checker] = {
    InvariantId.EVENT_ID_UNIQUENESS: check_event_id_uniqueness,
    InvariantId.HELP_INDEX_MONOTONIC: check_help_index_monotonic,
    InvariantId.REPLAY_DETERMINISM: check_replay_determinism,
    InvariantId.POLICY_STAMP_COMPLETENESS: check_policy_stamp_completeness,
}


def run_checkers(ctx: CheckContext, invariant_ids: Sequence[InvariantId] | None = None) -> list[InvariantOutcome]:
    selected = invariant_ids if invariant_ids is not None else list(REGISTRY)
    return [REGISTRY[invariant_id](ctx) for invariant_id in selected]


def to_audit_result(outcome: InvariantOutcome) -> InvariantAuditResult:
    return InvariantAuditResult(
        invariant_id=outcome.invariant_id.value,
        passed=outcome.passed,
        reason=outcome.reason,
        flow=outcome.flow.value,
        validity=outcome.validity.value,
        code=outcome.code,
        evidence=[dict(item) for item in outcome.evidence],
        details=dict(outcome.details),
    )
