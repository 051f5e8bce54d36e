# guidance_policy/contracts.py
from __future__ import annotations

import math
from enum import Enum
from typing import Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator
from typing_extensions import Annotated


class StrEnum(str, Enum):  # noqa: UP042
    """Python 3.10-compatible StrEnum."""


class GuidancePolicyError(ValueError):
    """Base class for errors raised by the guidance policy package."""


class DuplicateEventError(GuidancePolicyError):
    """Raised when an event id is appended to a log that already holds it."""


class ContentSetLoadError(GuidancePolicyError):
    """Raised when a content-set file cannot be read."""


class FlowKeyMismatchError(GuidancePolicyError):
    """Raised when a help-flow call is made with a state bound to another flow."""


# ------------------------------------------------------------------------------
# Shared BaseModel config helpers
# ------------------------------------------------------------------------------

_CONTRACT_CONFIG = ConfigDict(
    extra="forbid",
    validate_assignment=True,
    use_enum_values=False,  # keep enums as enums in Python
)

_IMMUTABLE_CONTRACT_CONFIG = ConfigDict(
    extra="forbid",
    use_enum_values=False,
    frozen=True,
)

# ------------------------------------------------------------------------------
# Interaction log
# ------------------------------------------------------------------------------


class EventKind(StrEnum):
    EXECUTION = "execution"
    ERROR = "error"
    HINT_VIEW = "hint_view"
    EXPLANATION_VIEW = "explanation_view"
    CODE_CHANGE = "code_change"
    CONTENT_GENERATED = "content_generated"
    CONTENT_SAVED = "content_saved"


HELP_EVENT_KINDS = frozenset({EventKind.HINT_VIEW, EventKind.EXPLANATION_VIEW})
POLICY_EVENT_KINDS = frozenset(
    {EventKind.EXECUTION, EventKind.ERROR, EventKind.HINT_VIEW, EventKind.EXPLANATION_VIEW}
)


class InteractionEvent(BaseModel):
    """
    Append-only interaction record. Created by callers (or proposed by the
    help flow) and never mutated afterwards.
    """

    model_config = _IMMUTABLE_CONTRACT_CONFIG

    event_id: str = Field(min_length=1)
    learner_id: str
    session_id: str | None = None
    problem_id: str
    timestamp: int
    kind: EventKind

    error_subtype: str | None = None
    hint_level: int | None = Field(default=None, ge=1, le=3)
    help_request_index: int | None = Field(default=None, ge=1)
    content_subtype: str | None = None
    content_row_id: str | None = None
    hint_id: str | None = None
    explanation_id: str | None = None
    note_id: str | None = None
    hint_text: str | None = None
    policy_version: str | None = None
    rule_fired: str | None = None
    successful: bool | None = None
    telemetry: dict[str, Any] = Field(default_factory=dict)

    @field_validator("error_subtype", "content_subtype", "session_id", mode="before")
    @classmethod
    def _normalize_optional_strings(cls, value: Any) -> Any:
        if value is None:
            return None
        if isinstance(value, str):
            normalized = value.strip()
            return normalized or None
        return value


# ------------------------------------------------------------------------------
# Learner profile / strategy
# ------------------------------------------------------------------------------


class Strategy(StrEnum):
    HINT_ONLY = "hint-only"
    ADAPTIVE_LOW = "adaptive-low"
    ADAPTIVE_MEDIUM = "adaptive-medium"
    ADAPTIVE_HIGH = "adaptive-high"


class LearnerProfile(BaseModel):
    model_config = _CONTRACT_CONFIG

    learner_id: str
    current_strategy: Strategy = Strategy.ADAPTIVE_MEDIUM
    name: str | None = None


class StrategyThresholds(BaseModel):
    """Error counts at which a learner is escalated / sent to saved notes. inf disables a rule."""

    model_config = _IMMUTABLE_CONTRACT_CONFIG

    escalate: float = Field(ge=0)
    aggregate: float = Field(ge=0)

    @field_validator("escalate", "aggregate", mode="before")
    @classmethod
    def _parse_infinity(cls, value: Any) -> Any:
        if isinstance(value, str) and value.strip().lower() in {"infinity", "inf", "+inf"}:
            return math.inf
        return value

    @field_serializer("escalate", "aggregate")
    def _serialize_threshold(self, value: float) -> float | int | str:
        if math.isinf(value):
            return "Infinity"
        return int(value) if float(value).is_integer() else value

    @property
    def escalation_enabled(self) -> bool:
        return math.isfinite(self.escalate)


# ------------------------------------------------------------------------------
# Decisions
# ------------------------------------------------------------------------------


class DecisionKind(StrEnum):
    PRESENT_HINT = "present-hint"
    PRESENT_EXPLANATION = "present-explanation"
    ADD_TO_NOTES = "add-to-notes"


class RuleFired(StrEnum):
    NO_ERRORS = "no-errors-show-hint"
    AUTO_ESCALATION = "auto-escalation-after-hints"
    ESCALATION_THRESHOLD = "escalation-threshold-met"
    AGGREGATION_THRESHOLD = "aggregation-threshold-met"
    PROGRESSIVE_HINT = "progressive-hint"
    PROFILE_UNAVAILABLE = "profile-unavailable"


class DecisionContext(BaseModel):
    model_config = _IMMUTABLE_CONTRACT_CONFIG

    error_count: int = 0
    retry_count: int = 0
    elapsed_ms: int = 0
    current_hint_level: int = 0
    recent_errors: tuple[str, ...] = ()


class AutoSubtype(BaseModel):
    """Use whatever subtype the learner's errors point at."""

    model_config = _IMMUTABLE_CONTRACT_CONFIG
    mode: Literal["auto"] = "auto"


class OverrideSubtype(BaseModel):
    """Instructor-pinned subtype; wins over observed errors."""

    model_config = _IMMUTABLE_CONTRACT_CONFIG
    mode: Literal["override"] = "override"
    subtype: str = Field(min_length=1)


SubtypeOverride = Annotated[Union[AutoSubtype, OverrideSubtype], Field(discriminator="mode")]

AUTO = AutoSubtype()


class AdaptiveDecision(BaseModel):
    model_config = _CONTRACT_CONFIG

    learner_id: str
    problem_id: str
    decision: DecisionKind
    rule_fired: RuleFired
    reasoning: str
    context: DecisionContext = Field(default_factory=DecisionContext)
    thresholds: StrategyThresholds | None = None
    suggested_hint_level: int | None = None
    focus_subtype: str | None = None
    decided_at: int = 0


# ------------------------------------------------------------------------------
# Content
# ------------------------------------------------------------------------------


class ContentRow(BaseModel):
    """One row of the read-only content set."""

    model_config = _IMMUTABLE_CONTRACT_CONFIG

    row_id: str
    query: str = ""
    error_type: str = ""
    error_subtype: str = ""
    emotion: str = ""
    feedback_target: str = ""
    intended_learning_outcome: str = ""


class HintSelection(BaseModel):
    model_config = _IMMUTABLE_CONTRACT_CONFIG

    subtype: str
    requested_subtype: str | None = None
    row_id: str
    hint_level: int = Field(ge=1, le=3)
    requested_level: int
    hint_text: str
    policy_version: str
    should_escalate: bool = False
    used_fallback_subtype: bool = False


# ------------------------------------------------------------------------------
# Help flow
# ------------------------------------------------------------------------------


class FlowKey(BaseModel):
    model_config = _IMMUTABLE_CONTRACT_CONFIG

    learner_id: str
    session_id: str | None = None
    problem_id: str

    def scope_key(self) -> str:
        return f"{self.session_id or 'no-session'}|{self.learner_id}|{self.problem_id}"

    def contains(self, event: InteractionEvent) -> bool:
        if event.learner_id != self.learner_id or event.problem_id != self.problem_id:
            return False
        return self.session_id is None or event.session_id == self.session_id


class HelpOutcomeStatus(StrEnum):
    EMITTED = "emitted"
    DUPLICATE = "duplicate"
    IN_FLIGHT = "in-flight"
    PROFILE_UNAVAILABLE = "profile-unavailable"


class HelpOutcome(BaseModel):
    model_config = _CONTRACT_CONFIG

    status: HelpOutcomeStatus
    help_request_index: int | None = None
    selection: HintSelection | None = None
    events: list[InteractionEvent] = Field(default_factory=list)

    @property
    def escalated(self) -> bool:
        return any(e.kind == EventKind.EXPLANATION_VIEW for e in self.events)


# ------------------------------------------------------------------------------
# Replay / audit
# ------------------------------------------------------------------------------


class ReplayDecisionPoint(BaseModel):
    model_config = _IMMUTABLE_CONTRACT_CONFIG

    index: int
    event_id: str
    learner_id: str
    problem_id: str
    timestamp: int
    event_kind: EventKind
    error_subtype: str | None = None
    strategy: Strategy
    thresholds: StrategyThresholds
    context: DecisionContext
    decision: DecisionKind
    rule_fired: RuleFired
    policy_version: str
    policy_semantics_version: str
    reasoning: str


class ReplayTrace(BaseModel):
    model_config = _CONTRACT_CONFIG

    strategy: Strategy
    thresholds: StrategyThresholds
    policy_version: str
    policy_semantics_version: str
    points: list[ReplayDecisionPoint] = Field(default_factory=list)
    checksum: str = ""


class ReplaySummary(BaseModel):
    model_config = _CONTRACT_CONFIG

    strategy: Strategy
    total_points: int = 0
    decisions: dict[str, int] = Field(default_factory=dict)
    rules: dict[str, int] = Field(default_factory=dict)
    checksum: str = ""


class InvariantAuditResult(BaseModel):
    """Normalized invariant outcome suitable for deterministic audit trails."""

    model_config = _CONTRACT_CONFIG

    invariant_id: str
    passed: bool
    reason: str = ""
    flow: str = "continue"
    validity: str = "valid"
    code: str = ""
    evidence: list[dict[str, Any]] = Field(default_factory=list)
    details: dict[str, Any] = Field(default_factory=dict)


class ReplayAudit(BaseModel):
    model_config = _CONTRACT_CONFIG

    trace: ReplayTrace
    invariants: list[InvariantAuditResult] = Field(default_factory=list)

    @property
    def passed(self) -> bool:
        return all(result.passed for result in self.invariants)
