"""
Command-line entry point for the stats pipeline.

Usage:
    Today:        pathstats-run
    One day:      pathstats-run --date 2024-03-01
    Backfill:     pathstats-run --days 30
    Demo data:    pathstats-run --create-schema --seed-client 1 --date 2024-03-01
"""

import argparse
import asyncio
import sys
from datetime import datetime
from typing import List, Optional

import structlog

from pathstats.config import get_settings
from pathstats.config.logging import configure_logging
from pathstats.database.connection import close_database, get_db, init_database
from pathstats.tasks import RunReport, RunStatus, TaskOrchestrator
from pathstats.utils.dates import utcnow

logger = structlog.get_logger(__name__)


def parse_date(value: str) -> datetime:
    try:
        return datetime.strptime(value, "%Y-%m-%d")
    except ValueError:
        raise argparse.ArgumentTypeError(f"Expected YYYY-MM-DD, got {value!r}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Regenerate daily session path statistics")
    target = parser.add_mutually_exclusive_group()
    target.add_argument(
        "--date",
        type=parse_date,
        help="Regenerate a single day (YYYY-MM-DD, default: today)",
    )
    target.add_argument(
        "--days",
        type=int,
        help="Regenerate the last N days, oldest first",
    )
    parser.add_argument(
        "--seed-client",
        type=int,
        help="Record synthetic journeys for this client on the target day before aggregating",
    )
    parser.add_argument(
        "--journeys",
        type=int,
        default=50,
        help="Number of synthetic journeys to record with --seed-client (default: 50)",
    )
    parser.add_argument(
        "--create-schema",
        action="store_true",
        help="Create missing tables before running",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Override LOG_LEVEL (DEBUG, INFO, WARNING, ERROR)",
    )
    return parser


async def run(args: argparse.Namespace) -> List[RunReport]:
    await init_database(create_tables=args.create_schema)
    try:
        if args.seed_client is not None:
            from pathstats.data import seed_journeys
            from pathstats.tracking import GeoResolver

            async with get_db() as session:
                await seed_journeys(
                    session,
                    args.seed_client,
                    args.date or utcnow(),
                    n=args.journeys,
                    geo_resolver=GeoResolver(),
                )

        orchestrator = TaskOrchestrator()
        if args.days is not None:
            return await orchestrator.run_for_last_n_days(args.days)
        return [await orchestrator.run_for_day(args.date)]
    finally:
        await close_database()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level)

    settings = get_settings()
    logger.info("Stats run requested", environment=settings.app_env, date=args.date, days=args.days)

    reports = asyncio.run(run(args))
    failed = [report for report in reports if report.status is not RunStatus.COMPLETED]
    for report in failed:
        for result in report.failed:
            logger.error("Client failed", client_id=result.client_id, day=str(report.day.date()), error=result.error)
    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(main())
