# sqlguide/__init__.py
"""
sqlguide distribution import namespace.

Re-exports the public surface of the `guidance_policy` package so callers
can import the engine, content selection, help flow and replay entry points
from one place.
"""

from importlib.metadata import PackageNotFoundError, version

from guidance_policy.content import canonicalize, classify_sql_error, select_content  # noqa: F401
from guidance_policy.contracts import (  # noqa: F401
    AUTO,
    AdaptiveDecision,
    DecisionKind,
    EventKind,
    FlowKey,
    HelpOutcome,
    HelpOutcomeStatus,
    HintSelection,
    InteractionEvent,
    LearnerProfile,
    OverrideSubtype,
    RuleFired,
    Strategy,
    StrategyThresholds,
)
from guidance_policy.engine import decide, decide_or_fallback, thresholds_for  # noqa: F401
from guidance_policy.help_flow import (  # noqa: F401
    HelpFlowState,
    allocate_next_index,
    register,
    request_help,
    reset,
    show_explanation,
    sync,
)
from guidance_policy.replay import audit_replay, compare_strategies, replay, replay_trace  # noqa: F401

try:
    __version__ = version("sqlguide")
except PackageNotFoundError:  # pragma: no cover - running from a source checkout
    __version__ = "0+unknown"

__all__ = [
    "AUTO",
    "AdaptiveDecision",
    "DecisionKind",
    "EventKind",
    "FlowKey",
    "HelpFlowState",
    "HelpOutcome",
    "HelpOutcomeStatus",
    "HintSelection",
    "InteractionEvent",
    "LearnerProfile",
    "OverrideSubtype",
    "RuleFired",
    "Strategy",
    "StrategyThresholds",
    "__version__",
    "allocate_next_index",
    "audit_replay",
    "canonicalize",
    "classify_sql_error",
    "compare_strategies",
    "decide",
    "decide_or_fallback",
    "register",
    "replay",
    "replay_trace",
    "request_help",
    "reset",
    "select_content",
    "show_explanation",
    "sync",
    "thresholds_for",
]
