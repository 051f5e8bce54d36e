# guidance_policy/engine.py
from __future__ import annotations

import logging
import math
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Mapping

from guidance_policy.contracts import (
    AUTO,
    AdaptiveDecision,
    DecisionContext,
    DecisionKind,
    EventKind,
    InteractionEvent,
    LearnerProfile,
    OverrideSubtype,
    RuleFired,
    Strategy,
    StrategyThresholds,
    SubtypeOverride,
)

logger = logging.getLogger(__name__)

POLICY_SEMANTICS_VERSION = "guidance-auto-escalation-after-hints-v2"

AGGREGATION_ELAPSED_MS = 10 * 60 * 1000
AUTO_ESCALATION_HINT_THRESHOLD = 3
MAX_HINT_LEVEL = 3
RECENT_ERROR_WINDOW = 5

STRATEGY_THRESHOLDS: Mapping[Strategy, StrategyThresholds] = {
    Strategy.HINT_ONLY: StrategyThresholds(escalate=math.inf, aggregate=math.inf),
    Strategy.ADAPTIVE_LOW: StrategyThresholds(escalate=5, aggregate=10),
    Strategy.ADAPTIVE_MEDIUM: StrategyThresholds(escalate=3, aggregate=6),
    Strategy.ADAPTIVE_HIGH: StrategyThresholds(escalate=2, aggregate=4),
}


@dataclass(frozen=True)
class AutoEscalationState:
    should_escalate: bool
    hint_count: int
    trigger_event_id: str | None = None


@dataclass(frozen=True)
class _RuleSelection:
    decision: DecisionKind
    rule_fired: RuleFired
    reasoning: str
    suggested_hint_level: int | None = None


def thresholds_for(strategy: Strategy | str) -> StrategyThresholds:
    return STRATEGY_THRESHOLDS[Strategy(strategy)].model_copy()


def _fmt_threshold(value: float) -> str:
    if math.isinf(value):
        return "Infinity"
    return str(int(value)) if float(value).is_integer() else str(value)


def _problem_events(events: Sequence[InteractionEvent], problem_id: str) -> list[InteractionEvent]:
    return [e for e in events if e.problem_id == problem_id]


def analyze_context(
    events: Sequence[InteractionEvent],
    problem_id: str,
    now: int | None = None,
) -> DecisionContext:
    problem_events = _problem_events(events, problem_id)
    errors = [e for e in problem_events if e.kind == EventKind.ERROR]
    hint_views = [e for e in problem_events if e.kind == EventKind.HINT_VIEW]

    recent_errors = tuple(e.error_subtype for e in errors[-RECENT_ERROR_WINDOW:] if e.error_subtype)

    elapsed_ms = 0
    if problem_events:
        reference = now if now is not None else problem_events[-1].timestamp
        elapsed_ms = max(0, reference - problem_events[0].timestamp)

    return DecisionContext(
        error_count=len(errors),
        retry_count=max(0, len(errors) - 1),
        elapsed_ms=elapsed_ms,
        current_hint_level=min(len(hint_views), MAX_HINT_LEVEL),
        recent_errors=recent_errors,
    )


def auto_escalation_state(
    events: Sequence[InteractionEvent],
    problem_id: str,
    hint_threshold: int = AUTO_ESCALATION_HINT_THRESHOLD,
) -> AutoEscalationState:
    """
    True once the learner has seen ``hint_threshold`` hints for the problem
    and no explanation was shown at or after the threshold hint.
    """
    problem_events = _problem_events(events, problem_id)
    hint_views = [e for e in problem_events if e.kind == EventKind.HINT_VIEW]
    if len(hint_views) < hint_threshold:
        return AutoEscalationState(should_escalate=False, hint_count=len(hint_views))

    threshold_hint = hint_views[hint_threshold - 1]
    explained = any(
        e.kind == EventKind.EXPLANATION_VIEW and e.timestamp >= threshold_hint.timestamp for e in problem_events
    )
    latest_error = next(
        (
            e
            for e in reversed(problem_events)
            if e.kind == EventKind.ERROR and e.timestamp >= threshold_hint.timestamp
        ),
        None,
    )
    trigger = latest_error.event_id if latest_error else threshold_hint.event_id
    return AutoEscalationState(should_escalate=not explained, hint_count=len(hint_views), trigger_event_id=trigger)


def _select_rule(
    context: DecisionContext,
    thresholds: StrategyThresholds,
    auto_escalation: AutoEscalationState,
) -> _RuleSelection:
    if context.error_count == 0:
        return _RuleSelection(
            decision=DecisionKind.PRESENT_HINT,
            rule_fired=RuleFired.NO_ERRORS,
            reasoning="No errors detected, showing basic hint",
            suggested_hint_level=min(context.current_hint_level + 1, MAX_HINT_LEVEL),
        )

    if thresholds.escalation_enabled and auto_escalation.should_escalate:
        return _RuleSelection(
            decision=DecisionKind.PRESENT_EXPLANATION,
            rule_fired=RuleFired.AUTO_ESCALATION,
            reasoning=f"Auto-escalation triggered after {auto_escalation.hint_count} hints with no explanation yet",
        )

    if context.error_count >= thresholds.escalate and context.retry_count >= 2:
        return _RuleSelection(
            decision=DecisionKind.PRESENT_EXPLANATION,
            rule_fired=RuleFired.ESCALATION_THRESHOLD,
            reasoning=(
                f"Error count ({context.error_count}) and retries ({context.retry_count}) "
                f"exceed escalation threshold ({_fmt_threshold(thresholds.escalate)})"
            ),
        )

    if context.error_count >= thresholds.aggregate or context.elapsed_ms > AGGREGATION_ELAPSED_MS:
        return _RuleSelection(
            decision=DecisionKind.ADD_TO_NOTES,
            rule_fired=RuleFired.AGGREGATION_THRESHOLD,
            reasoning=(
                f"High error count ({context.error_count}) or extended time "
                f"({round(context.elapsed_ms / 1000)}s) suggests need for comprehensive notes"
            ),
        )

    next_level = min(context.current_hint_level, MAX_HINT_LEVEL) + 1
    return _RuleSelection(
        decision=DecisionKind.PRESENT_HINT,
        rule_fired=RuleFired.PROGRESSIVE_HINT,
        reasoning=(
            f"Below escalation threshold ({_fmt_threshold(thresholds.escalate)}), showing level {next_level} hint"
        ),
        suggested_hint_level=next_level,
    )


def evaluate(
    events: Sequence[InteractionEvent],
    problem_id: str,
    thresholds: StrategyThresholds,
    *,
    now: int | None = None,
) -> tuple[DecisionContext, _RuleSelection]:
    context = analyze_context(events, problem_id, now)
    auto = auto_escalation_state(events, problem_id)
    return context, _select_rule(context, thresholds, auto)


def _focus_subtype(context: DecisionContext, override: SubtypeOverride) -> str | None:
    if isinstance(override, OverrideSubtype):
        return override.subtype
    return context.recent_errors[-1] if context.recent_errors else None


def decide(
    profile: LearnerProfile,
    events: Sequence[InteractionEvent],
    problem_id: str,
    *,
    now: int | None = None,
    override: SubtypeOverride = AUTO,
) -> AdaptiveDecision:
    """
    Turn the learner's time-ordered event history into one decision.

    ``events`` must already be sorted by timestamp; events for other problems
    are ignored. ``now`` defaults to the latest timestamp seen for the problem.
    """
    thresholds = thresholds_for(profile.current_strategy)
    context, selection = evaluate(events, problem_id, thresholds, now=now)
    problem_events = _problem_events(events, problem_id)
    decided_at = now if now is not None else (problem_events[-1].timestamp if problem_events else 0)

    decision = AdaptiveDecision(
        learner_id=profile.learner_id,
        problem_id=problem_id,
        decision=selection.decision,
        rule_fired=selection.rule_fired,
        reasoning=selection.reasoning,
        context=context,
        thresholds=thresholds,
        suggested_hint_level=selection.suggested_hint_level,
        focus_subtype=_focus_subtype(context, override),
        decided_at=decided_at,
    )
    logger.debug(
        "decision %s (%s) for learner=%s problem=%s strategy=%s",
        decision.decision.value,
        decision.rule_fired.value,
        profile.learner_id,
        problem_id,
        profile.current_strategy.value,
    )
    return decision


def fallback_decision(learner_id: str, problem_id: str) -> AdaptiveDecision:
    """Caller-side decision used when no learner profile is available."""
    return AdaptiveDecision(
        learner_id=learner_id,
        problem_id=problem_id,
        decision=DecisionKind.PRESENT_HINT,
        rule_fired=RuleFired.PROFILE_UNAVAILABLE,
        reasoning="profile unavailable",
    )


def decide_or_fallback(
    profile: LearnerProfile | None,
    events: Sequence[InteractionEvent],
    problem_id: str,
    *,
    learner_id: str = "",
    now: int | None = None,
    override: SubtypeOverride = AUTO,
) -> AdaptiveDecision:
    if profile is None:
        logger.info("no profile for learner=%s, using fallback decision", learner_id or "<unknown>")
        return fallback_decision(learner_id, problem_id)
    return decide(profile, events, problem_id, now=now, override=override)
