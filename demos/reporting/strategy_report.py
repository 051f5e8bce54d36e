from __future__ import annotations

import json
from collections import Counter, defaultdict
from pathlib import Path
from typing import Callable, Iterable

from pydantic import BaseModel, Field

from demos.run_tutor_sessions import TutorSessionBatch
from guidance_policy.adapters.persistence import events_for_learner
from guidance_policy.contracts import InteractionEvent, ReplaySummary, Strategy
from guidance_policy.replay import compare_strategies


class SessionStrategyPoint(BaseModel):
    session_id: str
    learner_id: str
    recorded_strategy: Strategy
    summaries: dict[str, ReplaySummary] = Field(default_factory=dict)


class StrategyTotals(BaseModel):
    strategy: Strategy
    session_count: int
    explanation_rate: float
    notes_rate: float
    decisions: dict[str, int] = Field(default_factory=dict)


class StrategyReport(BaseModel):
    generated_at_iso: str
    source_sessions_path: str
    total_sessions: int
    totals: list[StrategyTotals] = Field(default_factory=list)
    session_points: list[SessionStrategyPoint] = Field(default_factory=list)


def load_tutor_session_batch(path: str | Path) -> TutorSessionBatch:
    payload = json.loads(Path(path).read_text(encoding="utf-8"))
    return TutorSessionBatch.model_validate(payload)


def _rate(count: int, total: int) -> float:
    return count / float(total) if total else 0.0


def build_strategy_report(
    sessions_path: str | Path,
    *,
    strategies: Iterable[Strategy] | None = None,
    event_loader: Callable[[str | Path, str], list[InteractionEvent]] = events_for_learner,
) -> StrategyReport:
    """Replay every recorded session under each strategy and total the decisions."""
    batch = load_tutor_session_batch(sessions_path)
    selected = list(strategies) if strategies is not None else list(Strategy)

    decisions_by_strategy: dict[str, Counter[str]] = defaultdict(Counter)
    session_points: list[SessionStrategyPoint] = []
    for session in batch.sessions:
        events = event_loader(session.events_log_path, session.learner_id)
        summaries = compare_strategies(events, selected, learner_id=session.learner_id)
        for name, summary in summaries.items():
            decisions_by_strategy[name].update(summary.decisions)
        session_points.append(
            SessionStrategyPoint(
                session_id=session.session_id,
                learner_id=session.learner_id,
                recorded_strategy=session.strategy,
                summaries=summaries,
            )
        )

    totals: list[StrategyTotals] = []
    for strategy in selected:
        counts = decisions_by_strategy[strategy.value]
        points = sum(counts.values())
        totals.append(
            StrategyTotals(
                strategy=strategy,
                session_count=len(batch.sessions),
                explanation_rate=_rate(counts["present-explanation"], points),
                notes_rate=_rate(counts["add-to-notes"], points),
                decisions=dict(sorted(counts.items())),
            )
        )

    return StrategyReport(
        generated_at_iso=batch.generated_at_iso,
        source_sessions_path=str(Path(sessions_path)),
        total_sessions=len(batch.sessions),
        totals=totals,
        session_points=session_points,
    )


def write_strategy_report(*, sessions_path: str | Path, output_path: str | Path) -> Path:
    report = build_strategy_report(sessions_path)
    out = Path(output_path)
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text(json.dumps(report.model_dump(mode="json"), indent=2) + "\n", encoding="utf-8")
    return out
