"""
Unit Tests - Stat Generators
"""
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from pathstats.database.models import (
    ClientStat,
    PageStat,
    PageStatAction,
    PageStatTag,
    PageView,
    PathStat,
    PathStatAction,
    PathStatTag,
    StatValue,
)
from pathstats.errors import AggregateConflict
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
from pathstats.stats.shared import insert_sub_row, upsert_sub_row
from pathstats.tracking.attribution import AttributionResolver
from pathstats.tracking.paths import page_view_paths

from conftest import CHROME_UA, DAY

WINDOW = timedelta(hours=8)


async def record_visits(test_db, site, clock):
    """
    User 1 views the home page three times in one chain, user 2 once.
    """
    resolver = AttributionResolver(test_db, now=clock, window=WINDOW)
    first = await resolver.record_page_view(site.client.id, site.home.id, user_id=1, user_agent=CHROME_UA)
    clock.advance(minutes=1)
    second = await resolver.record_page_view(site.client.id, site.home.id, user_id=1,
                                             referrer_url="https://acme.test/", user_agent=CHROME_UA)
    clock.advance(minutes=1)
    third = await resolver.record_page_view(site.client.id, site.home.id, user_id=1,
                                            referrer_url="https://acme.test/", user_agent=CHROME_UA)
    clock.advance(minutes=1)
    other = await resolver.record_page_view(site.client.id, site.home.id, user_id=2, user_agent=CHROME_UA)
    return resolver, [first, second, third, other]


class TestStatValues:
    async def test_date_bucket(self, test_db):
        stat_value = await stat_value_for_date(test_db, DAY.replace(hour=17))

        assert stat_value.value == 1709251200
        assert stat_value.name == "2024-03-01"

    async def test_date_bucket_is_reused(self, test_db):
        first = await stat_value_for_date(test_db, DAY)
        second = await stat_value_for_date(test_db, DAY.replace(hour=23, minute=59))

        assert first.id == second.id
        assert (await test_db.execute(select(func.count()).select_from(StatValue))).scalar_one() == 1


class TestClientStat:
    """Tests for ClientStatGenerator"""

    async def test_traffic_counts(self, test_db, site, clock):
        await record_visits(test_db, site, clock)
        stat_value = await stat_value_for_date(test_db, DAY)

        stat = await ClientStatGenerator(test_db, WINDOW).generate(site.client.id, DAY, stat_value)

        assert stat.total_count == 4
        assert stat.unique_count == 2
        assert stat.bounce_count == 1
        assert stat.entry_count == 2
        assert stat.exit_count == 2
        assert stat.session_count == 2
        assert stat.created == DAY

    async def test_breakdowns(self, test_db, site, clock):
        await record_visits(test_db, site, clock)
        stat_value = await stat_value_for_date(test_db, DAY)

        stat = await ClientStatGenerator(test_db, WINDOW).generate(site.client.id, DAY, stat_value)

        assert stat.breakdowns["browser"] == [["Chrome 120", [4, 1.0]]]
        assert stat.breakdowns["device"] == [["Windows", [4, 1.0]]]
        assert stat.breakdowns["hour"] == [["12", [4, 1.0]]]
        assert stat.breakdowns["country"] == []

    async def test_other_days_are_excluded(self, test_db, site, clock):
        await record_visits(test_db, site, clock)
        stat_value = await stat_value_for_date(test_db, DAY + timedelta(days=1))

        stat = await ClientStatGenerator(test_db, WINDOW).generate(
            site.client.id, DAY + timedelta(days=1), stat_value
        )

        assert stat.total_count == 0
        assert stat.session_count == 0

    async def test_late_continuation_counts_as_entry(self, test_db, site):
        """A child created long after its parent starts a new visit"""
        early = PageView(page_id=site.home.id, user_id=1, created=DAY.replace(hour=0, minute=30))
        late = PageView(page_id=site.pricing.id, user_id=1, created=DAY.replace(hour=11))
        test_db.add_all([early, late])
        await test_db.flush()
        paths = page_view_paths(test_db)
        root = await paths.insert_edge(None, early.id, user_id=1, created=early.created)
        await paths.insert_edge(root.id, late.id, created=late.created)
        stat_value = await stat_value_for_date(test_db, DAY)

        stat = await ClientStatGenerator(test_db, WINDOW).generate(site.client.id, DAY, stat_value)

        assert stat.total_count == 2
        assert stat.entry_count == 2
        assert stat.session_count == 1
        assert stat.bounce_count == 0


class TestPageStat:
    """Tests for PageStatGenerator and ActionStatGenerator"""

    async def test_popularity_and_counts(self, test_db, site, clock):
        resolver, _ = await record_visits(test_db, site, clock)
        await resolver.record_page_view(site.client.id, site.pricing.id, user_id=3)
        stat_value = await stat_value_for_date(test_db, DAY)

        home = await PageStatGenerator(test_db, WINDOW).generate(
            site.client.id, site.home.id, DAY, stat_value, client_total=5
        )
        signup = await PageStatGenerator(test_db, WINDOW).generate(
            site.client.id, site.signup.id, DAY, stat_value, client_total=5
        )

        assert home.total_count == 4
        assert home.popularity == pytest.approx(0.8)
        assert signup.total_count == 0
        assert signup.popularity == 0.0

    async def test_tags_and_actions(self, test_db, site, clock):
        resolver = AttributionResolver(test_db, now=clock, window=WINDOW)
        edge = await resolver.record_page_view(site.client.id, site.home.id, user_id=1, tag_ids=[site.tag.id])
        await resolver.record_actions(edge.id, [
            {"action_type_id": site.click.id, "meta_data": {"target": "cta"}},
            {"action_type_id": site.click.id, "meta_data": {"target": "cta"}},
            {"action_type_id": site.submit.id, "meta_data": {"target": "signup-form"}},
        ])
        stat_value = await stat_value_for_date(test_db, DAY)

        page_stat = await PageStatGenerator(test_db, WINDOW).generate(
            site.client.id, site.home.id, DAY, stat_value, client_total=1
        )

        tags = (await test_db.execute(select(PageStatTag))).scalars().all()
        assert [(tag.tag_id, tag.stat_count) for tag in tags] == [(site.tag.id, 1)]
        actions = (await test_db.execute(
            select(PageStatAction).order_by(PageStatAction.action_type_id)
        )).scalars().all()
        assert {action.action_type_id: action.stat_count for action in actions} == {
            site.click.id: 2,
            site.submit.id: 1,
        }
        assert all(action.page_stat_id == page_stat.id for action in actions)

    async def test_action_stats(self, test_db, site, clock):
        resolver = AttributionResolver(test_db, now=clock, window=WINDOW)
        first = await resolver.record_page_view(site.client.id, site.home.id, user_id=1)
        second = await resolver.record_page_view(site.client.id, site.home.id, user_id=2)
        await resolver.record_actions(first.id, [
            {"action_type_id": site.click.id, "meta_data": {"target": "cta"}},
            {"action_type_id": site.submit.id, "meta_data": {"target": "signup-form"}},
        ])
        await resolver.record_actions(second.id, [{"action_type_id": site.click.id, "meta_data": {"target": "cta"}}])
        stat_value = await stat_value_for_date(test_db, DAY)
        page_stat = await PageStatGenerator(test_db, WINDOW).generate(
            site.client.id, site.home.id, DAY, stat_value, client_total=2
        )

        stats = await ActionStatGenerator(test_db, WINDOW).generate(page_stat, DAY, stat_value)

        by_type = {stat.action_type_id: stat for stat in stats}
        click = by_type[site.click.id]
        assert click.total_count == 2
        assert click.unique_count == 2
        assert click.popularity == pytest.approx(2 / 3)
        assert click.page_stat_id == page_stat.id
        assert click.breakdowns["target"] == [["cta", [2, 1.0]]]
        assert by_type[site.submit.id].total_count == 1
        assert by_type[site.submit.id].popularity == pytest.approx(1 / 3)

    async def test_action_stats_without_actions(self, test_db, site, clock):
        stat_value = await stat_value_for_date(test_db, DAY)
        page_stat = await PageStatGenerator(test_db, WINDOW).generate(site.client.id, site.home.id, DAY, stat_value)

        assert await ActionStatGenerator(test_db, WINDOW).generate(page_stat, DAY, stat_value) == []

    async def test_chain_across_pages(self, test_db, site, clock):
        """A page reached mid-chain and as a bounce counts both visits"""
        resolver = AttributionResolver(test_db, now=clock, window=WINDOW)
        await resolver.record_page_view(site.client.id, site.home.id, user_id=1)
        clock.advance(minutes=1)
        await resolver.record_page_view(site.client.id, site.pricing.id, user_id=1,
                                        referrer_url="https://acme.test/")
        clock.advance(minutes=1)
        await resolver.record_page_view(site.client.id, site.signup.id, user_id=1,
                                        referrer_url="https://acme.test/pricing")
        clock.advance(minutes=1)
        await resolver.record_page_view(site.client.id, site.signup.id, user_id=2)
        stat_value = await stat_value_for_date(test_db, DAY)

        signup = await PageStatGenerator(test_db, WINDOW).generate(
            site.client.id, site.signup.id, DAY, stat_value, client_total=4
        )

        assert signup.total_count == 2
        assert signup.unique_count == 2
        assert signup.bounce_count == 1
        assert signup.popularity == pytest.approx(0.5)

    async def test_next_day_actions_are_excluded(self, test_db, site, clock):
        resolver = AttributionResolver(test_db, now=clock, window=WINDOW)
        edge = await resolver.record_page_view(site.client.id, site.home.id, user_id=1, tag_ids=[site.tag.id])
        clock.advance(days=1)
        await resolver.record_actions(edge.id, [
            {"action_type_id": site.click.id, "meta_data": {"target": "cta"}, "tag_ids": [site.tag.id]},
        ])
        stat_value = await stat_value_for_date(test_db, DAY)

        page_stat = await PageStatGenerator(test_db, WINDOW).generate(
            site.client.id, site.home.id, DAY, stat_value, client_total=1
        )
        [path_stat] = await PathStatGenerator(test_db, WINDOW).generate(site.client.id, DAY, stat_value)

        assert page_stat.total_count == 1
        assert (await test_db.execute(select(func.count()).select_from(PageStatAction))).scalar_one() == 0
        assert (await test_db.execute(select(func.count()).select_from(PathStatAction))).scalar_one() == 0
        tag_row = (await test_db.execute(select(PathStatTag))).scalar_one()
        assert tag_row.path_stat_id == path_stat.id
        assert tag_row.stat_count == 1
        assert await ActionStatGenerator(test_db, WINDOW).generate(page_stat, DAY, stat_value) == []


class TestPathStat:
    """Tests for PathStatGenerator"""

    async def test_one_row_per_path(self, test_db, site, clock):
        await record_visits(test_db, site, clock)
        stat_value = await stat_value_for_date(test_db, DAY)

        stats = await PathStatGenerator(test_db, WINDOW).generate(site.client.id, DAY, stat_value)

        home = f"p{site.home.id}"
        by_path = {stat.path: stat for stat in stats}
        assert set(by_path) == {f"{home}-i0", f"{home}-i0,{home}-i1", f"{home}-i0,{home}-i1,{home}-i2"}

        roots = by_path[f"{home}-i0"]
        assert roots.stat_count == 2
        assert roots.unique_count == 2
        assert roots.exit_count == 1
        assert roots.from_page_id is None
        assert roots.index == 0

        second = by_path[f"{home}-i0,{home}-i1"]
        assert second.from_page_id == site.home.id
        assert second.to_page_id == site.home.id
        assert second.index == 1
        assert second.exit_count == 0

    async def test_tag_and_action_sub_rows(self, test_db, site, clock):
        resolver = AttributionResolver(test_db, now=clock, window=WINDOW)
        edge = await resolver.record_page_view(site.client.id, site.home.id, user_id=1, tag_ids=[site.tag.id])
        await resolver.record_actions(edge.id, [
            {"action_type_id": site.click.id, "tag_ids": [site.tag.id]},
        ])
        stat_value = await stat_value_for_date(test_db, DAY)

        [path_stat] = await PathStatGenerator(test_db, WINDOW).generate(site.client.id, DAY, stat_value)

        tag_row = (await test_db.execute(select(PathStatTag))).scalar_one()
        assert tag_row.path_stat_id == path_stat.id
        assert tag_row.stat_count == 2
        action_row = (await test_db.execute(select(PathStatAction))).scalar_one()
        assert action_row.action_type_id == site.click.id
        assert action_row.stat_count == 1


class TestReferrerAndUserStats:
    async def test_referrer_stats(self, test_db, site, clock):
        resolver = AttributionResolver(test_db, now=clock, window=WINDOW)
        url = "https://news.example.com/story"
        await resolver.record_page_view(site.client.id, site.home.id, user_id=1, referrer_url=url)
        clock.advance(minutes=5)
        await resolver.record_page_view(site.client.id, site.pricing.id, user_id=2, referrer_url=url)
        await resolver.record_page_view(site.client.id, site.pricing.id, user_id=3)
        stat_value = await stat_value_for_date(test_db, DAY)

        [stat] = await ReferrerStatGenerator(test_db, WINDOW).generate(site.client.id, DAY, stat_value)

        assert stat.total_count == 2
        assert stat.unique_count == 2
        assert stat.session_count == 2
        assert stat.breakdowns["referrer"] == [["news.example.com", [2, 1.0]]]

    async def test_user_stats(self, test_db, site, clock):
        await record_visits(test_db, site, clock)
        stat_value = await stat_value_for_date(test_db, DAY)

        stats = await UserStatGenerator(test_db, WINDOW).generate(site.client.id, DAY, stat_value)

        by_user = {stat.user_id: stat for stat in stats}
        assert set(by_user) == {1, 2}
        assert by_user[1].total_count == 3
        assert by_user[1].bounce_count == 0
        assert by_user[1].breakdowns["pages"] == [[str(site.home.id), [3, 1.0]]]
        assert by_user[2].bounce_count == 1


class TestSubRows:
    async def test_insert_conflict_and_upsert(self, test_db, site):
        stat_value = await stat_value_for_date(test_db, DAY)
        page_stat = await PageStatGenerator(test_db, WINDOW).generate(site.client.id, site.home.id, DAY, stat_value)

        await insert_sub_row(test_db, PageStatTag, "page_stat_id", page_stat.id, "tag_id", site.tag.id, 1)
        with pytest.raises(AggregateConflict) as exc:
            await insert_sub_row(test_db, PageStatTag, "page_stat_id", page_stat.id, "tag_id", site.tag.id, 2)
        assert exc.value.table == PageStatTag.__tablename__

        updated = await upsert_sub_row(test_db, PageStatTag, "page_stat_id", page_stat.id, "tag_id", site.tag.id, 5)

        assert updated.stat_count == 5
        rows = (await test_db.execute(select(PageStatTag))).scalars().all()
        assert len(rows) == 1


class TestCleanup:
    async def test_clear_client_day(self, test_db, site, clock):
        await record_visits(test_db, site, clock)
        stat_value = await stat_value_for_date(test_db, DAY)
        await ClientStatGenerator(test_db, WINDOW).generate(site.client.id, DAY, stat_value)
        await PageStatGenerator(test_db, WINDOW).generate(site.client.id, site.home.id, DAY, stat_value)
        await PathStatGenerator(test_db, WINDOW).generate(site.client.id, DAY, stat_value)

        deleted = await clear_client_day(test_db, site.client.id, stat_value.id)

        assert deleted[ClientStat.__tablename__] == 1
        assert deleted[PageStat.__tablename__] == 1
        assert deleted[PathStat.__tablename__] == 3
        for model in (ClientStat, PageStat, PathStat):
            assert (await test_db.execute(select(func.count()).select_from(model))).scalar_one() == 0

    async def test_other_days_survive(self, test_db, site, clock):
        today = await stat_value_for_date(test_db, DAY)
        tomorrow = await stat_value_for_date(test_db, DAY + timedelta(days=1))
        await ClientStatGenerator(test_db, WINDOW).generate(site.client.id, DAY, today)
        await ClientStatGenerator(test_db, WINDOW).generate(site.client.id, DAY + timedelta(days=1), tomorrow)

        await clear_client_day(test_db, site.client.id, today.id)

        remaining = (await test_db.execute(select(ClientStat))).scalars().all()
        assert [stat.stat_value_id for stat in remaining] == [tomorrow.id]
