# guidance_policy/cli.py
"""``sqlguide-replay``: replay recorded interaction logs offline."""
from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Sequence

from guidance_policy.adapters.persistence import read_events, read_trace, write_trace
from guidance_policy.contracts import InteractionEvent, Strategy
from guidance_policy.replay import audit_replay, compare_strategies, replay_trace, summarize
from guidance_policy.settings import GuidanceSettings, get_settings

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_MISMATCH = 1
EXIT_USAGE = 2

_STRATEGY_CHOICES = [s.value for s in Strategy]


def _build_parser(settings: GuidanceSettings) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="sqlguide-replay", description="Replay guidance decisions from an event log.")
    parser.add_argument(
        "--events",
        type=Path,
        default=settings.events_log_path,
        help="Path to the JSONL interaction log (default: %(default)s).",
    )
    parser.add_argument("--learner", default=None, help="Only replay events for this learner id.")
    sub = parser.add_subparsers(dest="command", required=True)

    replay_p = sub.add_parser("replay", help="Replay one strategy and write its trace.")
    replay_p.add_argument("--strategy", choices=_STRATEGY_CHOICES, default=settings.default_strategy.value)
    replay_p.add_argument("--output", type=Path, default=None, help="Trace output path.")

    compare_p = sub.add_parser("compare", help="Summarize decisions under several strategies.")
    compare_p.add_argument(
        "--strategy",
        dest="strategies",
        action="append",
        choices=_STRATEGY_CHOICES,
        help="Strategy to include; repeatable (default: all).",
    )

    verify_p = sub.add_parser("verify", help="Re-run a stored trace and compare checksums.")
    verify_p.add_argument("--baseline", type=Path, required=True, help="Previously written trace JSON.")
    return parser


def _emit(payload: Any) -> None:
    sys.stdout.write(json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True) + "\n")


def _load(events_path: Path) -> list[InteractionEvent]:
    if not events_path.exists():
        raise FileNotFoundError(f"event log not found: {events_path}")
    return read_events(events_path)


def _cmd_replay(args: argparse.Namespace, events: list[InteractionEvent], settings: GuidanceSettings) -> int:
    trace = replay_trace(events, args.strategy, learner_id=args.learner)
    output = args.output or settings.traces_dir / f"{trace.strategy.value}.json"
    write_trace(output, trace)
    _emit({"trace": str(output), **summarize(trace).model_dump(mode="json")})
    return EXIT_OK


def _cmd_compare(args: argparse.Namespace, events: list[InteractionEvent]) -> int:
    summaries = compare_strategies(events, args.strategies, learner_id=args.learner)
    _emit({name: summary.model_dump(mode="json") for name, summary in summaries.items()})
    return EXIT_OK


def _cmd_verify(args: argparse.Namespace, events: list[InteractionEvent]) -> int:
    baseline = read_trace(args.baseline)
    audit = audit_replay(events, baseline.strategy, learner_id=args.learner)
    matches = audit.trace.checksum == baseline.checksum
    _emit(
        {
            "strategy": baseline.strategy.value,
            "baseline_checksum": baseline.checksum,
            "replay_checksum": audit.trace.checksum,
            "match": matches,
            "invariants": [r.model_dump(mode="json") for r in audit.invariants],
        }
    )
    if not matches:
        logger.error("checksum mismatch for %s: %s != %s", baseline.strategy.value, audit.trace.checksum, baseline.checksum)
        return EXIT_MISMATCH
    return EXIT_OK if audit.passed else EXIT_MISMATCH


def main(argv: Sequence[str] | None = None) -> int:
    settings = get_settings()
    logging.basicConfig(level=settings.log_level, format="%(levelname)s %(name)s: %(message)s")
    args = _build_parser(settings).parse_args(argv)

    try:
        events = _load(args.events)
        if args.command == "replay":
            return _cmd_replay(args, events, settings)
        if args.command == "compare":
            return _cmd_compare(args, events)
        return _cmd_verify(args, events)
    except (OSError, ValueError) as exc:
        sys.stderr.write(f"sqlguide-replay: {exc}\n")
        return EXIT_USAGE


if __name__ == "__main__":
    raise SystemExit(main())
