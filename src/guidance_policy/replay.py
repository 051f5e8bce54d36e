# guidance_policy/replay.py
"""
Offline replay of recorded interaction logs.

Replay re-derives the decision the engine would have made after every
policy-relevant event, using only the events seen up to that point. Nothing
here reads a clock: each decision point evaluates with ``now`` set to the
timestamp of the event being replayed, so the same slice and strategy always
produce the same trace and checksum.
"""
from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Iterable, Sequence

from guidance_policy.content import CONTENT_POLICY_VERSION
from guidance_policy.contracts import (
    POLICY_EVENT_KINDS,
    InteractionEvent,
    ReplayAudit,
    ReplayDecisionPoint,
    ReplaySummary,
    ReplayTrace,
    Strategy,
)
from guidance_policy.engine import POLICY_SEMANTICS_VERSION, evaluate, thresholds_for
from guidance_policy.invariants import InvariantCheckContext, run_checkers, to_audit_result
from guidance_policy.stable_ids import checksum

logger = logging.getLogger(__name__)


def replayable_events(
    event_slice: Iterable[InteractionEvent],
    *,
    learner_id: str | None = None,
) -> list[InteractionEvent]:
    """Policy-relevant events with a problem id, stably sorted by timestamp."""
    kept = [
        e
        for e in event_slice
        if e.kind in POLICY_EVENT_KINDS and e.problem_id and (learner_id is None or e.learner_id == learner_id)
    ]
    # sorted() is stable, equal timestamps keep log order
    return sorted(kept, key=lambda e: e.timestamp)


def replay(
    event_slice: Iterable[InteractionEvent],
    strategy: Strategy | str,
    *,
    learner_id: str | None = None,
    policy_version: str = CONTENT_POLICY_VERSION,
) -> list[ReplayDecisionPoint]:
    strategy = Strategy(strategy)
    thresholds = thresholds_for(strategy)
    prefixes: dict[str, list[InteractionEvent]] = {}
    points: list[ReplayDecisionPoint] = []

    for event in replayable_events(event_slice, learner_id=learner_id):
        prefix = prefixes.setdefault(event.learner_id, [])
        prefix.append(event)
        context, selection = evaluate(prefix, event.problem_id, thresholds, now=event.timestamp)
        points.append(
            ReplayDecisionPoint(
                index=len(points) + 1,
                event_id=event.event_id,
                learner_id=event.learner_id,
                problem_id=event.problem_id,
                timestamp=event.timestamp,
                event_kind=event.kind,
                error_subtype=event.error_subtype,
                strategy=strategy,
                thresholds=thresholds,
                context=context,
                decision=selection.decision,
                rule_fired=selection.rule_fired,
                policy_version=policy_version,
                policy_semantics_version=POLICY_SEMANTICS_VERSION,
                reasoning=selection.reasoning,
            )
        )

    logger.debug("replayed %d decision points under %s", len(points), strategy.value)
    return points


def trace_checksum(points: Sequence[ReplayDecisionPoint]) -> str:
    return checksum([p.model_dump(mode="json") for p in points])


def replay_trace(
    event_slice: Iterable[InteractionEvent],
    strategy: Strategy | str,
    *,
    learner_id: str | None = None,
    policy_version: str = CONTENT_POLICY_VERSION,
) -> ReplayTrace:
    strategy = Strategy(strategy)
    points = replay(event_slice, strategy, learner_id=learner_id, policy_version=policy_version)
    return ReplayTrace(
        strategy=strategy,
        thresholds=thresholds_for(strategy),
        policy_version=policy_version,
        policy_semantics_version=POLICY_SEMANTICS_VERSION,
        points=points,
        checksum=trace_checksum(points),
    )


def summarize(trace: ReplayTrace) -> ReplaySummary:
    decisions = Counter(p.decision.value for p in trace.points)
    rules = Counter(p.rule_fired.value for p in trace.points)
    return ReplaySummary(
        strategy=trace.strategy,
        total_points=len(trace.points),
        decisions=dict(sorted(decisions.items())),
        rules=dict(sorted(rules.items())),
        checksum=trace.checksum,
    )


def compare_strategies(
    event_slice: Iterable[InteractionEvent],
    strategies: Iterable[Strategy | str] | None = None,
    *,
    learner_id: str | None = None,
) -> dict[str, ReplaySummary]:
    """Replay one slice under several strategies; keyed by strategy value."""
    events = list(event_slice)
    selected = [Strategy(s) for s in strategies] if strategies is not None else list(Strategy)
    return {
        strategy.value: summarize(replay_trace(events, strategy, learner_id=learner_id)) for strategy in selected
    }


def audit_replay(
    event_slice: Iterable[InteractionEvent],
    strategy: Strategy | str,
    *,
    learner_id: str | None = None,
) -> ReplayAudit:
    events = list(event_slice)
    if learner_id is not None:
        events = [e for e in events if e.learner_id == learner_id]
    trace = replay_trace(events, strategy)
    # a second, independent pass is what determinism is checked against
    rerun = replay_trace(events, strategy)
    ctx = InvariantCheckContext(
        scope=f"replay:{trace.strategy.value}",
        events=tuple(events),
        replay_points=tuple(trace.points),
        replay_checksums=(trace.checksum, rerun.checksum),
    )
    outcomes = run_checkers(ctx)
    failed = [o.invariant_id.value for o in outcomes if not o.passed]
    if failed:
        logger.warning("replay audit under %s failed: %s", trace.strategy.value, ", ".join(failed))
    return ReplayAudit(trace=trace, invariants=[to_audit_result(o) for o in outcomes])
