"""
Unit Tests - Task Orchestrator
"""
import asyncio
from datetime import datetime, timedelta

import pytest
from sqlalchemy import select

from pathstats.database.models import (
    ActionStat,
    ClientStat,
    PageStat,
    PageStatAction,
    PageStatTag,
    PathStat,
    PathStatAction,
    PathStatTag,
    ReferrerStat,
    StatValue,
    UserStat,
)
from pathstats.errors import OrchestratorBusy
from pathstats.stats import ClientStatGenerator
from pathstats.tasks import OrchestratorState, RunStatus, TaskOrchestrator
from pathstats.tracking.attribution import AttributionResolver

from conftest import CHROME_UA, DAY, make_site

WINDOW = timedelta(hours=8)

AGGREGATES = [
    ClientStat,
    PageStat,
    PageStatTag,
    PageStatAction,
    ActionStat,
    PathStat,
    PathStatTag,
    PathStatAction,
    ReferrerStat,
    UserStat,
]


async def record_traffic(test_db, site, clock):
    resolver = AttributionResolver(test_db, now=clock, window=WINDOW)
    first = await resolver.record_page_view(
        site.client.id, site.home.id, user_id=1, referrer_url="https://news.example.com/story",
        user_agent=CHROME_UA, tag_ids=[site.tag.id],
    )
    await resolver.record_actions(first.id, [
        {"action_type_id": site.click.id, "meta_data": {"target": "cta"}, "tag_ids": [site.tag.id]},
    ])
    clock.advance(minutes=2)
    await resolver.record_page_view(site.client.id, site.pricing.id, user_id=1,
                                    referrer_url="https://acme.test/", user_agent=CHROME_UA)
    await resolver.record_page_view(site.client.id, site.home.id, user_id=2)


async def snapshot(session_factory):
    """Every aggregate row, minus surrogate keys"""
    skipped = {"id", "page_stat_id", "path_stat_id"}
    tables = {}
    async with session_factory() as session:
        for model in AGGREGATES:
            rows = (await session.execute(select(model))).scalars().all()
            tables[model.__tablename__] = sorted(
                repr({c.key: getattr(row, c.key) for c in model.__table__.columns if c.key not in skipped})
                for row in rows
            )
    return tables


async def client_stats(session_factory):
    async with session_factory() as session:
        result = await session.execute(select(ClientStat).order_by(ClientStat.client_id))
        return result.scalars().all()


@pytest.fixture
def orchestrator(session_factory, clock):
    return TaskOrchestrator(session_factory=session_factory, now=clock, entry_window=WINDOW)


class TestRunForDay:
    """Tests for daily regeneration"""

    async def test_generates_every_family(self, test_db, site, clock, orchestrator, session_factory):
        await record_traffic(test_db, site, clock)
        await test_db.commit()

        report = await orchestrator.run_for_day(DAY)

        assert report.status == RunStatus.COMPLETED
        assert report.day == DAY
        [result] = report.results
        assert result.client_id == site.client.id
        assert result.total_count == 3
        assert result.page_stats == 3
        assert result.action_stats == 1
        assert result.path_stats == 2
        assert result.referrer_stats == 1
        assert result.user_stats == 2

        tables = await snapshot(session_factory)
        assert len(tables["client_stat"]) == 1
        assert len(tables["page_stat_tag"]) == 1
        assert len(tables["page_stat_action"]) == 1
        assert len(tables["path_stat_tag"]) == 1

    async def test_page_stat_figures(self, test_db, site, clock, orchestrator, session_factory):
        """Three chained home views by one user and a bounce by another"""
        resolver = AttributionResolver(test_db, now=clock, window=WINDOW)
        await resolver.record_page_view(site.client.id, site.home.id, user_id=1)
        for _ in range(2):
            clock.advance(minutes=1)
            await resolver.record_page_view(site.client.id, site.home.id, user_id=1,
                                            referrer_url="https://acme.test/")
        clock.advance(minutes=1)
        await resolver.record_page_view(site.client.id, site.home.id, user_id=2)
        await test_db.commit()

        report = await orchestrator.run_for_day(DAY)

        assert report.status == RunStatus.COMPLETED
        async with session_factory() as session:
            home = (await session.execute(
                select(PageStat).where(PageStat.page_id == site.home.id)
            )).scalar_one()
        assert home.total_count == 4
        assert home.unique_count == 2
        assert home.bounce_count == 1
        assert home.popularity == pytest.approx(1.0)

    async def test_defaults_to_today(self, test_db, site, clock, orchestrator):
        report = await orchestrator.run_for_day()

        assert report.day == datetime(2024, 3, 1)

    async def test_rerun_is_idempotent(self, test_db, site, clock, orchestrator, session_factory):
        """Running the same day twice leaves identical aggregates"""
        await record_traffic(test_db, site, clock)
        await test_db.commit()

        await orchestrator.run_for_day(DAY)
        first = await snapshot(session_factory)
        second_report = await orchestrator.run_for_day(DAY)
        second = await snapshot(session_factory)

        assert first == second
        assert second_report.results[0].rows_deleted > 0
        async with session_factory() as session:
            values = (await session.execute(select(StatValue))).scalars().all()
        assert len(values) == 1

    async def test_no_clients(self, orchestrator):
        report = await orchestrator.run_for_day(DAY)

        assert report.results == []
        assert report.status == RunStatus.COMPLETED
        assert report.completed_at is not None


class TestFailureIsolation:
    async def test_failing_client_does_not_stop_others(
        self, test_db, site, clock, orchestrator, session_factory, monkeypatch
    ):
        other = await make_site(test_db, name="Globex", host="globex.test")
        await record_traffic(test_db, site, clock)
        resolver = AttributionResolver(test_db, now=clock, window=WINDOW)
        await resolver.record_page_view(other.client.id, other.home.id, user_id=9)
        await test_db.commit()

        await orchestrator.run_for_day(DAY)
        before = await client_stats(session_factory)
        assert [stat.client_id for stat in before] == [site.client.id, other.client.id]

        original = ClientStatGenerator.generate

        async def failing_generate(self, client_id, day, stat_value):
            if client_id == site.client.id:
                raise RuntimeError("disk full")
            return await original(self, client_id, day, stat_value)

        monkeypatch.setattr(ClientStatGenerator, "generate", failing_generate)

        report = await orchestrator.run_for_day(DAY)

        assert report.status == RunStatus.PARTIAL
        failed, succeeded = report.results
        assert failed.status == RunStatus.FAILED
        assert "disk full" in failed.error
        assert succeeded.status == RunStatus.COMPLETED
        assert succeeded.total_count == 1

        # the failed client's cleanup was rolled back with the rest of its run
        after = await client_stats(session_factory)
        assert [stat.client_id for stat in after] == [site.client.id, other.client.id]
        assert orchestrator.state == OrchestratorState.IDLE

    async def test_all_clients_failing(self, test_db, site, orchestrator, monkeypatch):
        async def broken(self, client_id, day, stat_value):
            raise RuntimeError("broken")

        monkeypatch.setattr(ClientStatGenerator, "generate", broken)

        report = await orchestrator.run_for_day(DAY)

        assert report.status == RunStatus.FAILED
        assert len(report.failed) == 1


class TestConcurrency:
    async def test_overlapping_run_is_rejected(self, test_db, site, orchestrator):
        results = await asyncio.gather(
            orchestrator.run_for_day(DAY),
            orchestrator.run_for_day(DAY),
            return_exceptions=True,
        )

        assert sum(isinstance(result, OrchestratorBusy) for result in results) == 1
        assert sum(not isinstance(result, Exception) for result in results) == 1
        assert orchestrator.state == OrchestratorState.IDLE

    async def test_orchestrator_is_reusable_after_a_run(self, test_db, site, orchestrator):
        await orchestrator.run_for_day(DAY)

        report = await orchestrator.run_for_day(DAY)

        assert report.status == RunStatus.COMPLETED


class TestBackfill:
    async def test_last_n_days_oldest_first(self, test_db, site, orchestrator):
        reports = await orchestrator.run_for_last_n_days(3)

        assert [report.day for report in reports] == [
            datetime(2024, 2, 28),
            datetime(2024, 2, 29),
            datetime(2024, 3, 1),
        ]
        assert all(report.status == RunStatus.COMPLETED for report in reports)

    async def test_each_day_gets_its_own_bucket(self, test_db, site, orchestrator, session_factory):
        await orchestrator.run_for_last_n_days(2)

        async with session_factory() as session:
            names = (await session.execute(select(StatValue.name).order_by(StatValue.value))).scalars().all()
        assert names == ["2024-02-29", "2024-03-01"]

    async def test_rejects_non_positive_n(self, orchestrator):
        with pytest.raises(ValueError):
            await orchestrator.run_for_last_n_days(0)

        assert orchestrator.state == OrchestratorState.IDLE
