#!/usr/bin/env python3
"""Follow-up Sequence Runner.

Command-line tool that runs one trigger monitor cycle and/or one sweep over
due executions against the configured database. Suitable for cron.
"""

import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", ".."))

from agents.followup.calendar import HttpCalendarOracle, OpenCalendar
from agents.followup.config import FollowUpConfig
from agents.followup.dispatch import NoOpDispatcher, OutboxDispatcher
from agents.followup.errors import FollowUpError
from agents.followup.schema import load_sequences_yaml
from agents.followup.store import SqlStore
from backend.apps.followup.service import build_services
from backend.core.config import settings
from backend.core.observability import logging_module, set_trace_id


def setup_logging(verbose: bool = False, json_logs: bool = False) -> None:
    """Setup logging configuration.

    Args:
        verbose: Enable verbose logging
        json_logs: Emit structured JSON lines instead of plain text
    """
    level = "DEBUG" if verbose else "INFO"

    if json_logs:
        logging_module.init_logging(level)
        return

    logging.basicConfig(
        level=getattr(logging, level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stderr)],
        force=True,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Follow-up Sequence Runner",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Evaluate triggers and continue due executions
  python tools/followup/run_sequences.py

  # Dry run against a local sqlite file, seeding sequences from YAML
  python tools/followup/run_sequences.py --database-url sqlite:///followup.db \\
      --create-schema --seed ops/sequences.yaml --dry-run

  # Only continue due executions
  python tools/followup/run_sequences.py --mode pending --limit 50
        """,
    )
    parser.add_argument(
        "--database-url",
        default=settings.database_url,
        help="SQLAlchemy database URL (default: settings.database_url)",
    )
    parser.add_argument(
        "--create-schema", action="store_true", help="Create follow-up tables if missing"
    )
    parser.add_argument("--seed", help="YAML file with sequence definitions to upsert before running")
    parser.add_argument(
        "--mode",
        choices=("all", "monitor", "pending"),
        default="all",
        help="Run the trigger monitor, the pending sweep, or both (default: all)",
    )
    parser.add_argument(
        "--dry-run", action="store_true", help="Use a no-op dispatcher (no messages enqueued)"
    )
    parser.add_argument("--limit", type=int, help="Maximum due executions to continue")
    parser.add_argument(
        "--calendar-url",
        default=settings.FOLLOWUP_CALENDAR_URL,
        help="Business calendar service URL (default: always open)",
    )
    parser.add_argument("--report-path", help="Write the JSON summary to this path")
    parser.add_argument("--correlation-id", help="Trace ID for log correlation (default: generated)")
    parser.add_argument("--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument("--json-logs", action="store_true", help="Structured JSON log output")
    return parser


def run(args: argparse.Namespace) -> dict[str, Any]:
    """Run the requested follow-up work.

    Args:
        args: Parsed command-line arguments

    Returns:
        Summary with `monitor` and/or `pending` sections
    """
    logger = logging.getLogger(__name__)
    trace_id = set_trace_id(args.correlation_id)

    store = SqlStore(args.database_url)
    if args.create_schema:
        store.create_schema()

    if args.dry_run:
        dispatcher = NoOpDispatcher()
    else:
        dispatcher = OutboxDispatcher(store.engine)
        if args.create_schema:
            dispatcher.create_schema()

    calendar = (
        HttpCalendarOracle(args.calendar_url, timeout_ms=settings.FOLLOWUP_CALENDAR_TIMEOUT_MS)
        if args.calendar_url
        else OpenCalendar()
    )

    summary: dict[str, Any] = {"trace_id": trace_id, "dry_run": args.dry_run}

    if args.seed:
        sequences = load_sequences_yaml(Path(args.seed))
        for sequence in sequences:
            store.add_sequence(sequence)
        summary["seeded"] = len(sequences)
        logger.info("Seeded sequences", extra={"count": len(sequences), "path": args.seed})

    services = build_services(store, dispatcher, calendar, FollowUpConfig.from_env())

    if args.mode in ("all", "monitor"):
        summary["monitor"] = services.monitor.run_once().to_dict()
    if args.mode in ("all", "pending"):
        summary["pending"] = services.controller.process_pending_executions(args.limit).to_dict()

    if args.dry_run:
        summary["dry_run_messages"] = len(dispatcher.sent)

    return summary


def has_errors(summary: dict[str, Any]) -> bool:
    return any(summary.get(section, {}).get("errors") for section in ("monitor", "pending"))


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    setup_logging(args.verbose, args.json_logs)
    logger = logging.getLogger(__name__)

    try:
        summary = run(args)
    except (FollowUpError, OSError) as e:
        logger.error(f"Follow-up run failed: {e}")
        return 1

    output = json.dumps(summary, indent=2, default=str)
    if args.report_path:
        report_path = Path(args.report_path)
        report_path.parent.mkdir(parents=True, exist_ok=True)
        report_path.write_text(output, encoding="utf-8")
        logger.info(f"Report saved to: {report_path}")
    print(output)

    return 1 if has_errors(summary) else 0


if __name__ == "__main__":
    sys.exit(main())
