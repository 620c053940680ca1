"""Command line entry point.

Usage:
    python -m agent_session_core replay events.jsonl --status completed
    python -m agent_session_core classify error_max_turns
    python -m agent_session_core runs
    python -m agent_session_core show <run_id>
"""
from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

from dotenv import load_dotenv
from loguru import logger

from agent_session_core.app_config import load_json_config, parse_app_config
from agent_session_core.bootstrap import bootstrap_runtime
from agent_session_core.errors import BridgeError, StrictModeError, classify_error, get_resume_warning
from agent_session_core.logging_config import setup_logging
from agent_session_core.models import Run
from agent_session_core.phase import TERMINAL_RUN_STATUSES
from agent_session_core.reducer import SessionReducer
from agent_session_core.services.summary_formatter import SummaryFormatter


def read_event_log(path: Path) -> list[dict]:
    """Read one JSON event per line; blank lines are skipped."""
    events: list[dict] = []
    with open(path, encoding="utf-8") as f:
        for number, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                events.append(json.loads(line))
            except json.JSONDecodeError as ex:
                raise ValueError(f"{path}:{number}: invalid JSON ({ex.msg})") from ex
    return events


def replay_events(events: list[dict], *, status: str, strict: bool) -> tuple[SessionReducer, float]:
    run_id = next((str(e["run_id"]) for e in events if e.get("run_id")), "replay")
    reducer = SessionReducer(strict_mode=strict)
    reducer.set_run(Run(id=run_id, status=status))
    # Events without a run id belong to the replayed run.
    tagged = [{**event, "run_id": event.get("run_id") or run_id} for event in events]
    elapsed_ms = reducer.apply_event_batch(tagged, replay_only=status in TERMINAL_RUN_STATUSES)
    return reducer, elapsed_ms


def _cmd_replay(args: argparse.Namespace, formatter: SummaryFormatter) -> int:
    events = read_event_log(Path(args.events))
    try:
        reducer, elapsed_ms = replay_events(events, status=args.status, strict=args.strict)
    except StrictModeError as ex:
        print(f"Strict replay failed: {ex}")
        return 2
    for line in formatter.format_session_summary_lines(reducer, elapsed_ms=elapsed_ms):
        print(line)
    return 0


def _cmd_classify(args: argparse.Namespace, formatter: SummaryFormatter) -> int:
    classified = classify_error(args.subtype, args.message)
    for line in formatter.format_classification_lines(classified):
        print(line)
    return 0


async def _cmd_runs(args: argparse.Namespace, formatter: SummaryFormatter) -> int:
    runtime = await bootstrap_runtime(parse_app_config(load_json_config()), configure_logging=False)
    try:
        runs = runtime.runs.list_runs(limit=args.limit)
        if not runs:
            print("No runs.")
        for run in runs:
            print(formatter.format_run_entry(run))
    finally:
        await runtime.shutdown()
    return 0


async def _cmd_show(args: argparse.Namespace, formatter: SummaryFormatter) -> int:
    runtime = await bootstrap_runtime(parse_app_config(load_json_config()), configure_logging=False)
    try:
        session = runtime.session
        await session.load_run(args.run_id)
        for line in formatter.format_session_summary_lines(session):
            print(line)
        warning = get_resume_warning(session.run)
        if warning:
            print(f"- Resume warning: {warning}")
    finally:
        await runtime.shutdown()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agent-session",
        description="Replay and inspect agent session event logs",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    parser.add_argument(
        "--debug",
        action="append",
        default=[],
        metavar="COMPONENT",
        help="Enable debug logging for one component (router, reducer, store, bridge, storage); repeatable",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    replay = sub.add_parser("replay", help="Fold a JSONL event log and print a summary")
    replay.add_argument("events", help="Path to a JSONL file with one event per line")
    replay.add_argument(
        "--status",
        default="completed",
        help="Run status to replay under; terminal statuses replay history only (default: completed)",
    )
    replay.add_argument("--strict", action="store_true", help="Fail on unknown events and anomalies")

    classify = sub.add_parser("classify", help="Classify a result subtype and/or error message")
    classify.add_argument("subtype", help="Result subtype, e.g. error_max_turns (use '' for none)")
    classify.add_argument("message", nargs="?", default=None, help="Error message text")

    runs = sub.add_parser("runs", help="List stored runs")
    runs.add_argument("--limit", type=int, default=20)

    show = sub.add_parser("show", help="Load a stored run and print its summary")
    show.add_argument("run_id")
    return parser


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)

    config = load_json_config()
    setup_logging(
        level="DEBUG" if args.verbose else config.get("LogLevel", "WARNING"),
        consumers=config.get("LogConsumers", [{"type": "console"}]),
        debug_components=args.debug or config.get("LogDebugComponents"),
    )
    formatter = SummaryFormatter()

    try:
        if args.command == "replay":
            return _cmd_replay(args, formatter)
        if args.command == "classify":
            return _cmd_classify(args, formatter)
        if args.command == "runs":
            return asyncio.run(_cmd_runs(args, formatter))
        if args.command == "show":
            return asyncio.run(_cmd_show(args, formatter))
    except (OSError, ValueError, BridgeError) as ex:
        logger.error(f"{args.command} failed: {ex}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
