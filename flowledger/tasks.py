"""Scheduled jobs.

Usage:
    python -m flowledger.tasks process-recurring
    python -m flowledger.tasks process-recurring --date 2024-02-15 --rates static
"""
from __future__ import annotations

import argparse
from datetime import date
import logging
import sys

from flowledger.config import build_rate_provider, configure_logging, get_database_url
from flowledger.currency_conversion import StaticRateProvider
from flowledger.recurring_schedules import process_due_schedules
from flowledger.store import LedgerStore, create_ledger_engine

logger = logging.getLogger(__name__)


def _parse_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Invalid date {value!r}, expected YYYY-MM-DD") from exc


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run flowledger background jobs.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    recurring = subparsers.add_parser(
        "process-recurring",
        help="Create flows for every active recurring schedule that is due.",
    )
    recurring.add_argument(
        "--date",
        type=_parse_date,
        default=None,
        help="Treat this day as today (default: the current date).",
    )
    recurring.add_argument(
        "--database-url",
        default=None,
        help="Database to process (default: $DATABASE_URL).",
    )
    recurring.add_argument(
        "--rates",
        choices=("live", "static"),
        default="live",
        help="Use live FX rates with static fallback, or static rates only.",
    )
    parser.add_argument("--log-level", default=None, help="Logging level (default: $LOG_LEVEL or INFO).")
    return parser.parse_args(argv)


def run_process_recurring(args: argparse.Namespace) -> int:
    store = LedgerStore(create_ledger_engine(args.database_url or get_database_url()))
    store.create_all()
    rate_provider = StaticRateProvider() if args.rates == "static" else build_rate_provider()
    result = process_due_schedules(store, today=args.date or date.today(), rate_provider=rate_provider)
    for error in result.errors:
        logger.error("Schedule %s: %s", error.schedule_id, error.error)
    return 0 if not result.errors else 1


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    configure_logging(args.log_level)
    if args.command == "process-recurring":
        return run_process_recurring(args)
    return 2


if __name__ == "__main__":
    sys.exit(main())
