from __future__ import annotations

import argparse
import json
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field

from guidance_policy.adapters.persistence import events_for_learner, flow_events, save_events
from guidance_policy.content import ContentSet, classify_sql_error, default_content_set
from guidance_policy.contracts import (
    DecisionKind,
    EventKind,
    FlowKey,
    HelpOutcomeStatus,
    InteractionEvent,
    LearnerProfile,
    Strategy,
)
from guidance_policy.engine import decide
from guidance_policy.help_flow import HelpFlowState, propose_note_events, request_help, show_explanation, sync
from guidance_policy.settings import get_settings


class ScriptedStep(BaseModel):
    """One learner action in a scripted tutoring session."""

    action: Literal["execute", "error", "help", "explain"]
    at_ms: int
    message: str = ""
    query: str = ""


class TutorSessionArtifact(BaseModel):
    """Persisted handle for a completed scripted session."""

    session_id: str
    learner_id: str
    problem_id: str
    strategy: Strategy
    events_log_path: str
    hints: int = 0
    explanations: int = 0
    notes: int = 0


class TutorSessionBatch(BaseModel):
    generated_at_iso: str
    sessions: list[TutorSessionArtifact] = Field(default_factory=list)


def write_tutor_session_batch(*, output_path: str | Path, batch: TutorSessionBatch) -> Path:
    out = Path(output_path)
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text(json.dumps(batch.model_dump(mode="json"), indent=2) + "\n", encoding="utf-8")
    return out


def _attempt_event(flow_key: FlowKey, n: int, step: ScriptedStep, content: ContentSet) -> InteractionEvent:
    failed = step.action == "error"
    return InteractionEvent(
        event_id=f"{flow_key.scope_key()}|{n}|{step.action}",
        learner_id=flow_key.learner_id,
        session_id=flow_key.session_id,
        problem_id=flow_key.problem_id,
        timestamp=step.at_ms,
        kind=EventKind.ERROR if failed else EventKind.EXECUTION,
        error_subtype=classify_sql_error(step.message, step.query, content=content) if failed else None,
        successful=not failed,
    )


def run_scripted_session(
    *,
    log_path: str | Path,
    flow_key: FlowKey,
    profile: LearnerProfile,
    steps: list[ScriptedStep],
    content: ContentSet | None = None,
    state: HelpFlowState | None = None,
) -> TutorSessionArtifact:
    """
    Drive the online loop for one flow: attempts are classified and logged,
    aggregation decisions save notes, and help steps go through the help flow.
    Every proposed event is persisted to ``log_path`` before the next step.
    """
    if content is None:
        content = default_content_set()
    if state is None:
        state = get_settings().new_help_flow_state()
    sync(state, flow_key, flow_events(log_path, flow_key))
    artifact = TutorSessionArtifact(
        session_id=flow_key.session_id or "no-session",
        learner_id=flow_key.learner_id,
        problem_id=flow_key.problem_id,
        strategy=profile.current_strategy,
        events_log_path=str(log_path),
    )
    last_subtype: str | None = None

    for n, step in enumerate(steps, start=1):
        history = sorted(events_for_learner(log_path, flow_key.learner_id), key=lambda e: e.timestamp)

        if step.action in ("execute", "error"):
            attempt = _attempt_event(flow_key, n, step, content)
            save_events(log_path, [attempt])
            if attempt.kind is not EventKind.ERROR:
                continue
            last_subtype = attempt.error_subtype
            decision = decide(profile, [*history, attempt], flow_key.problem_id, now=step.at_ms)
            if decision.decision is DecisionKind.ADD_TO_NOTES:
                notes = propose_note_events(
                    flow_key=flow_key, decision=decision, trigger_event=attempt, content=content, now=step.at_ms
                )
                save_events(log_path, notes)
                artifact.notes += 1
            continue

        if step.action == "help":
            outcome = request_help(
                state, profile=profile, events=history, subtype=last_subtype, now=step.at_ms, content=content
            )
        else:
            outcome = show_explanation(state, events=history, subtype=last_subtype, now=step.at_ms, content=content)
        if outcome.status is not HelpOutcomeStatus.EMITTED:
            continue
        save_events(log_path, outcome.events)
        artifact.hints += sum(1 for e in outcome.events if e.kind is EventKind.HINT_VIEW)
        artifact.explanations += sum(1 for e in outcome.events if e.kind is EventKind.EXPLANATION_VIEW)

    return artifact


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a scripted tutoring session and persist its event log.")
    parser.add_argument("--script", required=True, help="JSON file holding a list of scripted steps.")
    parser.add_argument("--events", required=True, help="JSONL event log to append to.")
    parser.add_argument("--output", required=True, help="Path to write the session batch JSON artifact.")
    parser.add_argument("--learner", default="demo-learner")
    parser.add_argument("--session", default="demo-session")
    parser.add_argument("--problem", default="demo-problem")
    parser.add_argument("--strategy", choices=[s.value for s in Strategy], default=Strategy.ADAPTIVE_MEDIUM.value)
    parser.add_argument(
        "--generated-at-iso",
        default="1970-01-01T00:00:00+00:00",
        help="Deterministic timestamp embedded in the persisted batch artifact.",
    )
    return parser.parse_args()


def main() -> int:
    args = _parse_args()
    raw_steps = json.loads(Path(args.script).read_text(encoding="utf-8"))
    artifact = run_scripted_session(
        log_path=args.events,
        flow_key=FlowKey(learner_id=args.learner, session_id=args.session, problem_id=args.problem),
        profile=LearnerProfile(learner_id=args.learner, current_strategy=Strategy(args.strategy)),
        steps=[ScriptedStep.model_validate(item) for item in raw_steps],
    )
    batch = TutorSessionBatch(generated_at_iso=args.generated_at_iso, sessions=[artifact])
    write_tutor_session_batch(output_path=args.output, batch=batch)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
