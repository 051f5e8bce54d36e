# guidance_policy/help_flow.py
"""
Per-flow bookkeeping for help requests.

A flow is one (learner, session, problem) triple. The caller owns one
``HelpFlowState`` per flow and threads it through every call here; nothing
in this module keeps state of its own. The append-only event log stays the
source of truth: ``reset``/``sync`` rebuild the counter from it whenever the
caller moves to a new flow.
"""
from __future__ import annotations

import logging
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field

from guidance_policy.content import ContentSet, compose_seed
from guidance_policy.contracts import (
    AUTO,
    HELP_EVENT_KINDS,
    AdaptiveDecision,
    EventKind,
    FlowKey,
    FlowKeyMismatchError,
    HelpOutcome,
    HelpOutcomeStatus,
    HintSelection,
    InteractionEvent,
    LearnerProfile,
    OverrideSubtype,
    RuleFired,
    SubtypeOverride,
)
from guidance_policy.stable_ids import (
    derive_content_event_id,
    derive_help_event_id,
    derive_note_id,
    stable_explanation_id,
    stable_hint_id,
)

logger = logging.getLogger(__name__)

DEFAULT_DEDUPE_CAPACITY = 1000
EXPLANATION_MIN_INDEX = 4
LAST_HINT_LEVEL = 3


@dataclass
class HelpFlowState:
    key: FlowKey | None = None
    next_index: int = 1
    capacity: int = DEFAULT_DEDUPE_CAPACITY
    sequence: int = 0
    in_flight: bool = False
    # dict preserves insertion order, which is what eviction relies on
    emitted: dict[tuple[EventKind, int], None] = field(default_factory=dict)

    def require_key(self) -> FlowKey:
        if self.key is None:
            raise FlowKeyMismatchError("help flow state has not been reset for a flow key")
        return self.key


def persisted_next_index(flow_key: FlowKey, history: Sequence[InteractionEvent]) -> int:
    return sum(1 for e in history if e.kind in HELP_EVENT_KINDS and flow_key.contains(e)) + 1


def reset(state: HelpFlowState, flow_key: FlowKey, history: Sequence[InteractionEvent]) -> HelpFlowState:
    state.key = flow_key
    state.next_index = persisted_next_index(flow_key, history)
    state.emitted = {}
    state.sequence = 0
    logger.debug("help flow reset for %s, next index %d", flow_key.scope_key(), state.next_index)
    return state


def sync(state: HelpFlowState, flow_key: FlowKey, history: Sequence[InteractionEvent]) -> int:
    """Reset on a new flow key; otherwise catch up with the log without ever lowering the counter."""
    if state.key != flow_key:
        reset(state, flow_key, history)
        return state.next_index
    persisted = persisted_next_index(flow_key, history)
    if persisted > state.next_index:
        state.next_index = persisted
    return state.next_index


def allocate_next_index(state: HelpFlowState) -> int:
    allocated = state.next_index
    state.next_index = allocated + 1
    return allocated


def register(state: HelpFlowState, kind: EventKind, index: int) -> bool:
    key = (EventKind(kind), int(index))
    if key in state.emitted:
        logger.debug("duplicate %s emission for index %d dropped", key[0].value, key[1])
        return False
    if len(state.emitted) >= state.capacity:
        for old in list(state.emitted)[: max(1, state.capacity // 2)]:
            del state.emitted[old]
    state.emitted[key] = None
    return True


def begin_request(state: HelpFlowState) -> bool:
    if state.in_flight:
        return False
    state.in_flight = True
    return True


def end_request(state: HelpFlowState) -> None:
    state.in_flight = False


@contextmanager
def help_request_guard(state: HelpFlowState) -> Iterator[bool]:
    acquired = begin_request(state)
    try:
        yield acquired
    finally:
        if acquired:
            end_request(state)


def _next_sequence(state: HelpFlowState) -> int:
    state.sequence += 1
    return state.sequence


def _telemetry(problem_trace: Sequence[InteractionEvent], now: int) -> dict[str, int]:
    error_count = sum(1 for e in problem_trace if e.kind == EventKind.ERROR)
    return {
        "retry_count": max(0, error_count - 1),
        "hint_count": sum(1 for e in problem_trace if e.kind == EventKind.HINT_VIEW),
        "time_spent_ms": max(0, now - problem_trace[0].timestamp) if problem_trace else 0,
    }


def _scoped_trace(flow_key: FlowKey, events: Sequence[InteractionEvent]) -> list[InteractionEvent]:
    return [e for e in events if flow_key.contains(e)]


def _select(
    content: ContentSet,
    flow_key: FlowKey,
    subtype: str | None,
    index: int,
    override: SubtypeOverride,
) -> HintSelection:
    level = max(1, min(LAST_HINT_LEVEL, index))
    canonical = content.canonicalize(override.subtype if isinstance(override, OverrideSubtype) else subtype)
    seed = compose_seed(flow_key.learner_id, flow_key.problem_id, canonical, level)
    return content.select_content(subtype, index, seed, override=override)


def _explanation_event(
    state: HelpFlowState,
    *,
    selection: HintSelection,
    index: int,
    source: str,
    trace: Sequence[InteractionEvent],
    now: int,
) -> InteractionEvent:
    flow_key = state.require_key()
    return InteractionEvent(
        event_id=derive_help_event_id(
            flow_key=flow_key,
            kind=EventKind.EXPLANATION_VIEW,
            help_request_index=index,
            sequence=_next_sequence(state),
        ),
        learner_id=flow_key.learner_id,
        session_id=flow_key.session_id,
        problem_id=flow_key.problem_id,
        timestamp=now,
        kind=EventKind.EXPLANATION_VIEW,
        error_subtype=selection.subtype,
        help_request_index=index,
        content_subtype=selection.subtype,
        content_row_id=selection.row_id,
        explanation_id=stable_explanation_id(subtype=selection.subtype, row_id=selection.row_id),
        policy_version=selection.policy_version,
        rule_fired="escalation",
        telemetry={
            "inputs": _telemetry(trace, now),
            "outputs": {"source": source, "help_request_index": index, "explanation_requested": True},
        },
    )


def _propose_explanation(
    state: HelpFlowState,
    *,
    index: int,
    events: Sequence[InteractionEvent],
    subtype: str | None,
    now: int,
    content: ContentSet,
    source: str,
    override: SubtypeOverride = AUTO,
) -> HelpOutcome:
    # index must already be allocated from state
    flow_key = state.require_key()
    selection = _select(content, flow_key, subtype, index, override)
    if not register(state, EventKind.EXPLANATION_VIEW, index):
        return HelpOutcome(status=HelpOutcomeStatus.DUPLICATE, help_request_index=index, selection=selection)

    trace = _scoped_trace(flow_key, events)
    event = _explanation_event(state, selection=selection, index=index, source=source, trace=trace, now=now)
    logger.info("explanation proposed for %s at index %d (%s)", flow_key.scope_key(), index, source)
    return HelpOutcome(
        status=HelpOutcomeStatus.EMITTED,
        help_request_index=index,
        selection=selection,
        events=[event],
    )


def show_explanation(
    state: HelpFlowState,
    *,
    events: Sequence[InteractionEvent],
    subtype: str | None,
    now: int,
    content: ContentSet,
    source: str = "manual",
    override: SubtypeOverride = AUTO,
) -> HelpOutcome:
    """
    Propose an explanation_view at the next help-request index, raised to 4
    when fewer than three requests precede it. The index always comes from
    the allocator, so it is never lower than one already issued.
    """
    state.require_key()
    index = allocate_next_index(state)
    if index < EXPLANATION_MIN_INDEX:
        index = EXPLANATION_MIN_INDEX
        state.next_index = index + 1
    return _propose_explanation(
        state,
        index=index,
        events=events,
        subtype=subtype,
        now=now,
        content=content,
        source=source,
        override=override,
    )


def request_help(
    state: HelpFlowState,
    *,
    profile: LearnerProfile | None,
    events: Sequence[InteractionEvent],
    subtype: str | None,
    now: int,
    content: ContentSet,
    override: SubtypeOverride = AUTO,
) -> HelpOutcome:
    """
    Handle one "next help" request for the state's flow.

    Indices 1-3 yield hint_view proposals at the matching ladder level; a
    level-3 hint chains an automatic explanation at the following index, and
    any index from 4 on goes straight to an explanation. The caller persists
    the returned events; nothing is written here.
    """
    flow_key = state.require_key()
    if profile is None:
        return HelpOutcome(status=HelpOutcomeStatus.PROFILE_UNAVAILABLE)

    with help_request_guard(state) as acquired:
        if not acquired:
            logger.debug("help request for %s rejected, another is in flight", flow_key.scope_key())
            return HelpOutcome(status=HelpOutcomeStatus.IN_FLIGHT)

        trace = _scoped_trace(flow_key, events)
        index = allocate_next_index(state)
        if index >= EXPLANATION_MIN_INDEX:
            return _propose_explanation(
                state,
                index=index,
                events=trace,
                subtype=subtype,
                now=now,
                content=content,
                source="auto",
                override=override,
            )

        selection = _select(content, flow_key, subtype, index, override)
        if not register(state, EventKind.HINT_VIEW, index):
            return HelpOutcome(status=HelpOutcomeStatus.DUPLICATE, help_request_index=index, selection=selection)

        will_escalate = selection.hint_level == LAST_HINT_LEVEL
        hint_event = InteractionEvent(
            event_id=derive_help_event_id(
                flow_key=flow_key,
                kind=EventKind.HINT_VIEW,
                help_request_index=index,
                sequence=_next_sequence(state),
            ),
            learner_id=flow_key.learner_id,
            session_id=flow_key.session_id,
            problem_id=flow_key.problem_id,
            timestamp=now,
            kind=EventKind.HINT_VIEW,
            hint_level=selection.hint_level,
            help_request_index=index,
            content_subtype=selection.subtype,
            content_row_id=selection.row_id,
            hint_id=stable_hint_id(subtype=selection.subtype, hint_level=selection.hint_level, row_id=selection.row_id),
            hint_text=selection.hint_text,
            policy_version=selection.policy_version,
            rule_fired=RuleFired.PROGRESSIVE_HINT.value,
            telemetry={
                "inputs": _telemetry(trace, now),
                "outputs": {
                    "hint_level": selection.hint_level,
                    "help_request_index": index,
                    "will_escalate": will_escalate,
                },
            },
        )
        proposed = [hint_event]

        if will_escalate:
            chained = _propose_explanation(
                state,
                index=allocate_next_index(state),
                events=[*trace, hint_event],
                subtype=selection.subtype,
                now=now,
                content=content,
                source="auto",
            )
            proposed.extend(chained.events)

        logger.info("hint L%d proposed for %s at index %d", selection.hint_level, flow_key.scope_key(), index)
        return HelpOutcome(
            status=HelpOutcomeStatus.EMITTED,
            help_request_index=index,
            selection=selection,
            events=proposed,
        )


def propose_note_events(
    *,
    flow_key: FlowKey,
    decision: AdaptiveDecision,
    trigger_event: InteractionEvent,
    content: ContentSet,
    now: int,
) -> list[InteractionEvent]:
    """content_generated + content_saved pair for an add-to-notes decision."""
    subtype = content.canonicalize(decision.focus_subtype)
    note_id = derive_note_id(flow_key=flow_key, trigger_event_id=trigger_event.event_id, subtype=subtype)
    concepts = list(content.concept_ids_for(subtype))
    proposed: list[InteractionEvent] = []
    for kind in (EventKind.CONTENT_GENERATED, EventKind.CONTENT_SAVED):
        proposed.append(
            InteractionEvent(
                event_id=derive_content_event_id(note_id=note_id, kind=kind),
                learner_id=flow_key.learner_id,
                session_id=flow_key.session_id,
                problem_id=flow_key.problem_id,
                timestamp=now,
                kind=kind,
                content_subtype=subtype,
                note_id=note_id,
                policy_version=content.policy_version,
                rule_fired=decision.rule_fired.value,
                telemetry={
                    "inputs": {"trigger_event_id": trigger_event.event_id, "error_count": decision.context.error_count},
                    "outputs": {"concept_ids": concepts},
                },
            )
        )
    return proposed
