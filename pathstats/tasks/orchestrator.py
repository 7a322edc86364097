"""
Task Orchestrator

Daily entry point of the aggregation pipeline. For each client, in turn,
clears the day's aggregates and regenerates them from the session graph.

Each client runs in its own transaction: a failing client is rolled back,
logged and reported while the remaining clients carry on.
"""

import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from structlog.contextvars import bound_contextvars

from pathstats.config import get_settings
from pathstats.database.connection import get_session_factory
from pathstats.database.models import Client, Page
from pathstats.errors import OrchestratorBusy, PerClientPipelineFailure
from pathstats.stats import (
    ActionStatGenerator,
    ClientStatGenerator,
    PageStatGenerator,
    PathStatGenerator,
    ReferrerStatGenerator,
    UserStatGenerator,
    clear_client_day,
    stat_value_for_date,
)
from pathstats.utils.dates import DateLike, day_floor, last_n_days, utcnow
from pathstats.utils.sequence import run_sequential

logger = structlog.get_logger(__name__)


class OrchestratorState(str, Enum):
    """Orchestrator lifecycle"""
    IDLE = "idle"
    RUNNING = "running"


class RunStatus(str, Enum):
    """Outcome of a client or a whole day"""
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"


@dataclass
class ClientRunResult:
    """Result of one client's pipeline for one day"""
    client_id: int
    day: datetime
    status: RunStatus
    rows_deleted: int = 0
    total_count: int = 0
    page_stats: int = 0
    action_stats: int = 0
    path_stats: int = 0
    referrer_stats: int = 0
    user_stats: int = 0
    duration_seconds: float = 0
    error: Optional[str] = None


@dataclass
class RunReport:
    """Result of a daily run over every client"""
    day: datetime
    started_at: datetime
    completed_at: Optional[datetime] = None
    results: List[ClientRunResult] = field(default_factory=list)

    @property
    def failed(self) -> List[ClientRunResult]:
        return [r for r in self.results if r.status == RunStatus.FAILED]

    @property
    def status(self) -> RunStatus:
        if not self.failed:
            return RunStatus.COMPLETED
        if len(self.failed) == len(self.results):
            return RunStatus.FAILED
        return RunStatus.PARTIAL


class TaskOrchestrator:
    """
    Regenerates daily aggregates for every client.

    Example:
        orchestrator = TaskOrchestrator()
        report = await orchestrator.run_for_day(datetime(2024, 3, 1))
        reports = await orchestrator.run_for_last_n_days(7)
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        now: Callable[[], datetime] = utcnow,
        entry_window: Optional[timedelta] = None,
    ):
        self._session_factory = session_factory
        self.now = now
        if entry_window is None:
            entry_window = timedelta(hours=get_settings().stats.entry_window_hours)
        self.entry_window = entry_window
        self._state = OrchestratorState.IDLE

    @property
    def state(self) -> OrchestratorState:
        return self._state

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            self._session_factory = get_session_factory()
        return self._session_factory

    def _start(self) -> None:
        if self._state is OrchestratorState.RUNNING:
            raise OrchestratorBusy("A stats run is already in progress")
        self._state = OrchestratorState.RUNNING

    async def run_for_day(self, when: Optional[DateLike] = None) -> RunReport:
        """
        Regenerate aggregates for the day containing ``when`` (default: today).

        Raises:
            OrchestratorBusy: Another run is in progress
        """
        self._start()
        try:
            return await self._run_day(day_floor(when if when is not None else self.now()))
        finally:
            self._state = OrchestratorState.IDLE

    async def run_for_last_n_days(self, n: Optional[int] = None) -> List[RunReport]:
        """
        Regenerate each of the last ``n`` days, oldest first.

        Raises:
            OrchestratorBusy: Another run is in progress
        """
        if n is None:
            n = get_settings().stats.backfill_days
        if n < 1:
            raise ValueError("n must be at least 1")

        self._start()
        try:
            days = last_n_days(n, self.now())
            logger.info("Backfill started", days=n, first_day=str(days[0].date()))
            return await run_sequential([
                (lambda day=day: self._run_day(day)) for day in days
            ])
        finally:
            self._state = OrchestratorState.IDLE

    async def _client_ids(self) -> List[int]:
        async with self.session_factory() as session:
            result = await session.execute(select(Client.id).order_by(Client.id))
            return list(result.scalars().all())

    async def _run_day(self, day: datetime) -> RunReport:
        report = RunReport(day=day, started_at=utcnow())
        client_ids = await self._client_ids()
        logger.info("Daily stats run started", day=str(day.date()), clients=len(client_ids))

        report.results = await run_sequential([
            (lambda client_id=client_id: self._run_client_guarded(client_id, day))
            for client_id in client_ids
        ])
        report.completed_at = utcnow()

        logger.info(
            "Daily stats run finished",
            day=str(day.date()),
            status=report.status.value,
            clients=len(report.results),
            failed=len(report.failed),
        )
        return report

    async def _run_client_guarded(self, client_id: int, day: datetime) -> ClientRunResult:
        started = time.perf_counter()
        try:
            with bound_contextvars(client_id=client_id, day=str(day.date())):
                return await self.run_client(client_id, day)
        except Exception as e:
            failure = PerClientPipelineFailure(client_id, day, e)
            logger.error(
                "Client stats pipeline failed",
                client_id=client_id,
                day=str(day.date()),
                error=str(failure),
                error_type=type(e).__name__,
                exc_info=True,
            )
            return ClientRunResult(
                client_id=client_id,
                day=day,
                status=RunStatus.FAILED,
                duration_seconds=time.perf_counter() - started,
                error=str(failure),
            )

    async def run_client(self, client_id: int, day: DateLike) -> ClientRunResult:
        """
        Clear and regenerate one client's aggregates for one day, in a single
        transaction.
        """
        day = day_floor(day)
        started = time.perf_counter()

        async with self.session_factory() as session:
            async with session.begin():
                stat_value = await stat_value_for_date(session, day)
                deleted = await clear_client_day(session, client_id, stat_value.id)

                client_stat = await ClientStatGenerator(session, self.entry_window).generate(
                    client_id, day, stat_value
                )

                result = await session.execute(
                    select(Page.id).where(Page.client_id == client_id).order_by(Page.id)
                )
                page_ids = list(result.scalars().all())

                page_generator = PageStatGenerator(session, self.entry_window)
                action_generator = ActionStatGenerator(session, self.entry_window)

                async def page_unit(page_id: int) -> int:
                    page_stat = await page_generator.generate(
                        client_id, page_id, day, stat_value, client_total=client_stat.total_count
                    )
                    return len(await action_generator.generate(page_stat, day, stat_value))

                action_counts = await run_sequential([
                    (lambda page_id=page_id: page_unit(page_id)) for page_id in page_ids
                ])

                path_stats = await PathStatGenerator(session, self.entry_window).generate(client_id, day, stat_value)
                referrer_stats = await ReferrerStatGenerator(session, self.entry_window).generate(
                    client_id, day, stat_value
                )
                user_stats = await UserStatGenerator(session, self.entry_window).generate(client_id, day, stat_value)

        outcome = ClientRunResult(
            client_id=client_id,
            day=day,
            status=RunStatus.COMPLETED,
            rows_deleted=sum(deleted.values()),
            total_count=client_stat.total_count,
            page_stats=len(page_ids),
            action_stats=sum(action_counts),
            path_stats=len(path_stats),
            referrer_stats=len(referrer_stats),
            user_stats=len(user_stats),
            duration_seconds=time.perf_counter() - started,
        )
        logger.info(
            "Client stats regenerated",
            client_id=client_id,
            day=str(day.date()),
            total_count=outcome.total_count,
            pages=outcome.page_stats,
            paths=outcome.path_stats,
            duration_seconds=round(outcome.duration_seconds, 3),
        )
        return outcome
