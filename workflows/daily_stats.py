"""
Prefect Workflow Orchestration - Daily Stats

Scheduled regeneration of the per-day aggregates:
- daily_stats_flow: regenerate one day (default: yesterday and today)
- backfill_stats_flow: regenerate the last N days, oldest first
"""

from datetime import date, datetime, timedelta
from typing import List, Optional

from prefect import flow, task, get_run_logger

from pathstats.config import get_settings
from pathstats.database.connection import close_database, init_database
from pathstats.tasks import RunReport, RunStatus, TaskOrchestrator
from pathstats.utils.dates import day_floor, utcnow

settings = get_settings()


def summarize(report: RunReport) -> dict:
    return {
        "day": report.day.date().isoformat(),
        "status": report.status.value,
        "clients": len(report.results),
        "failed_clients": [r.client_id for r in report.failed],
        "errors": [r.error for r in report.failed],
        "total_count": sum(r.total_count for r in report.results),
    }


# =============================================================================
# TASKS
# =============================================================================

@task(
    name="regenerate_day",
    description="Clear and regenerate every client's aggregates for one day",
    retries=2,
    retry_delay_seconds=300,
)
async def regenerate_day(day: datetime) -> dict:
    """Regenerate one day of aggregates"""
    logger = get_run_logger()

    await init_database()
    try:
        report = await TaskOrchestrator().run_for_day(day)
    finally:
        await close_database()

    summary = summarize(report)
    logger.info(
        f"Stats for {summary['day']}: {summary['status']}, "
        f"{summary['clients']} clients, {len(summary['failed_clients'])} failed"
    )
    return summary


@task(
    name="regenerate_last_n_days",
    description="Regenerate the last N days of aggregates, oldest first",
    retries=1,
    retry_delay_seconds=600,
)
async def regenerate_last_n_days(days: int) -> List[dict]:
    """Backfill aggregates"""
    logger = get_run_logger()

    await init_database()
    try:
        reports = await TaskOrchestrator().run_for_last_n_days(days)
    finally:
        await close_database()

    summaries = [summarize(report) for report in reports]
    partial = [s["day"] for s in summaries if s["status"] != RunStatus.COMPLETED.value]
    logger.info(f"Backfill complete: {len(summaries)} days, {len(partial)} with failures")
    return summaries


# =============================================================================
# FLOWS
# =============================================================================

@flow(
    name="daily_stats",
    description="Nightly regeneration of per-day aggregate statistics",
)
async def daily_stats_flow(day: Optional[date] = None) -> List[dict]:
    """
    Regenerate aggregates.

    Without an explicit day, both yesterday (now complete) and today (so far)
    are regenerated.
    """
    logger = get_run_logger()

    if day is not None:
        days = [day_floor(day)]
    else:
        today = day_floor(utcnow())
        days = [today - timedelta(days=1), today]

    logger.info(f"Starting daily stats for {[d.date().isoformat() for d in days]}")

    results = []
    for target in days:
        results.append(await regenerate_day(target))

    failed = [r for r in results if r["status"] != RunStatus.COMPLETED.value]
    if failed:
        logger.warning(f"Daily stats finished with failures on {[r['day'] for r in failed]}")
    return results


@flow(
    name="backfill_stats",
    description="Regenerate aggregates for the last N days",
)
async def backfill_stats_flow(days: Optional[int] = None) -> List[dict]:
    """Backfill the last ``days`` days (default from STATS_BACKFILL_DAYS)"""
    return await regenerate_last_n_days(days or settings.stats.backfill_days)


# =============================================================================
# DEPLOYMENT CONFIGURATION
# =============================================================================

if __name__ == "__main__":
    import asyncio

    asyncio.run(daily_stats_flow())
