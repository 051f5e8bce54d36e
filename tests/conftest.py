from __future__ import annotations

from collections.abc import Callable, Iterator
from typing import Any

import pytest

from guidance_policy.adapters.content_loader import load_default_content_set
from guidance_policy.content import ContentSet
from guidance_policy.contracts import EventKind, FlowKey, InteractionEvent, LearnerProfile, Strategy
from guidance_policy.help_flow import HelpFlowState, reset
from guidance_policy.settings import get_settings


@pytest.fixture(autouse=True)
def _fresh_settings() -> Iterator[None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def content_set() -> ContentSet:
    return load_default_content_set()


@pytest.fixture
def flow_key() -> FlowKey:
    return FlowKey(learner_id="learner-1", session_id="session-1", problem_id="problem-1")


@pytest.fixture
def make_profile() -> Callable[..., LearnerProfile]:
    def _make_profile(
        *,
        learner_id: str = "learner-1",
        strategy: Strategy = Strategy.ADAPTIVE_MEDIUM,
    ) -> LearnerProfile:
        return LearnerProfile(learner_id=learner_id, current_strategy=strategy)

    return _make_profile


@pytest.fixture
def make_event() -> Callable[..., InteractionEvent]:
    counter = {"n": 0}

    def _make_event(
        kind: EventKind = EventKind.ERROR,
        *,
        timestamp: int = 0,
        event_id: str | None = None,
        learner_id: str = "learner-1",
        session_id: str | None = "session-1",
        problem_id: str = "problem-1",
        error_subtype: str | None = None,
        **extra: Any,
    ) -> InteractionEvent:
        counter["n"] += 1
        if kind == EventKind.ERROR and error_subtype is None:
            error_subtype = "undefined column"
        return InteractionEvent(
            event_id=event_id or f"evt-{counter['n']}",
            learner_id=learner_id,
            session_id=session_id,
            problem_id=problem_id,
            timestamp=timestamp,
            kind=kind,
            error_subtype=error_subtype,
            **extra,
        )

    return _make_event


@pytest.fixture
def make_trace(make_event: Callable[..., InteractionEvent]) -> Callable[..., list[InteractionEvent]]:
    """Build a time-ordered trace from (kind, timestamp) pairs."""

    def _make_trace(*steps: tuple[EventKind, int], **defaults: Any) -> list[InteractionEvent]:
        return [make_event(kind, timestamp=ts, **defaults) for kind, ts in steps]

    return _make_trace


@pytest.fixture
def flow_state(flow_key: FlowKey) -> HelpFlowState:
    return reset(HelpFlowState(), flow_key, [])
