"""
Stat Generators

One generator per aggregate family. Each takes a scope and a day, scans the
day's edges in that scope and writes the aggregate row(s) keyed to the
day's StatValue. Top-level rows are plain inserts; callers clear the day
first (see ``pathstats.stats.cleanup``). Tag and action sub-rows upsert.
"""

from datetime import timedelta
from typing import List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pathstats.accumulators import Counter, CountMapReducer, action_counters, traffic_counters
from pathstats.config import get_settings
from pathstats.database.models import (
    Action,
    ActionPath,
    ActionStat,
    ActionTag,
    ClientStat,
    Page,
    PageStat,
    PageStatAction,
    PageStatTag,
    PageView,
    PageViewPath,
    PageViewPathTag,
    PathStat,
    PathStatAction,
    PathStatTag,
    ReferrerStat,
    StatValue,
    UserStat,
)
from pathstats.database.repository import Repository, created_between, in_set
from pathstats.stats.shared import (
    EdgeIndex,
    group_rows,
    load_action_edges,
    load_page_view_edges,
    upsert_sub_row,
)
from pathstats.utils.dates import DateLike, day_bounds, day_floor
from pathstats.utils.sequence import batched

logger = structlog.get_logger(__name__)


class StatGenerator:
    """Common plumbing for the aggregate families"""

    def __init__(self, session: AsyncSession, entry_window: Optional[timedelta] = None):
        self.session = session
        self.repo = Repository(session)
        if entry_window is None:
            entry_window = timedelta(hours=get_settings().stats.entry_window_hours)
        self.entry_window = entry_window

    async def _tag_frequency(self, tag_model, edge_column: str, edge_ids: List[int]) -> Counter:
        """How often each tag is attached to the given edges (or actions)"""
        counter = Counter(lambda tag_id: tag_id)
        for chunk in batched(edge_ids):
            result = await self.session.execute(
                select(tag_model.tag_id)
                .where(in_set(getattr(tag_model, edge_column), chunk))
                .order_by(tag_model.id)
            )
            counter = counter.count_all(result.scalars().all())
        return counter

    async def _action_frequency(self, page_view_path_ids: List[int], day: DateLike) -> Counter:
        """How often each action type was performed on the given page view paths during ``day``"""
        lo, hi = day_bounds(day)
        counter = Counter(lambda action_type_id: action_type_id)
        for chunk in batched(page_view_path_ids):
            result = await self.session.execute(
                select(Action.action_type_id)
                .join(ActionPath, ActionPath.to_action_id == Action.id)
                .where(in_set(ActionPath.page_view_path_id, chunk), created_between(Action.created, lo, hi))
                .order_by(ActionPath.id)
            )
            counter = counter.count_all(result.scalars().all())
        return counter

    async def _action_tag_frequency(self, page_view_path_ids: List[int], day: DateLike) -> Counter:
        lo, hi = day_bounds(day)
        counter = Counter(lambda tag_id: tag_id)
        for chunk in batched(page_view_path_ids):
            result = await self.session.execute(
                select(ActionTag.tag_id)
                .join(ActionPath, ActionPath.to_action_id == ActionTag.action_id)
                .join(Action, Action.id == ActionTag.action_id)
                .where(in_set(ActionPath.page_view_path_id, chunk), created_between(Action.created, lo, hi))
                .order_by(ActionTag.id)
            )
            counter = counter.count_all(result.scalars().all())
        return counter


class ClientStatGenerator(StatGenerator):
    """Daily traffic over all of a client's pages"""

    async def generate(self, client_id: int, day: DateLike, stat_value: StatValue) -> ClientStat:
        rows = await load_page_view_edges(self.session, day, Page.client_id == client_id)
        index = await EdgeIndex.build(self.session, PageViewPath, rows)
        counts = index.counts(rows, self.entry_window)

        client_stat = await self.repo.insert(
            ClientStat,
            client_id=client_id,
            stat_value_id=stat_value.id,
            breakdowns=CountMapReducer(traffic_counters()).reduce(rows),
            created=day_floor(day),
            **counts.as_fields(),
        )
        logger.info(
            "Client stat generated",
            client_id=client_id,
            day=stat_value.name,
            total_count=counts.total_count,
            unique_count=counts.unique_count,
        )
        return client_stat


class PageStatGenerator(StatGenerator):
    """Daily traffic for one page, with tag and action frequencies"""

    async def generate(
        self,
        client_id: int,
        page_id: int,
        day: DateLike,
        stat_value: StatValue,
        client_total: int = 0,
    ) -> PageStat:
        rows = await load_page_view_edges(self.session, day, PageView.page_id == page_id)
        index = await EdgeIndex.build(self.session, PageViewPath, rows)
        counts = index.counts(rows, self.entry_window)

        page_stat = await self.repo.insert(
            PageStat,
            client_id=client_id,
            page_id=page_id,
            stat_value_id=stat_value.id,
            popularity=(counts.total_count / client_total) if client_total else 0.0,
            breakdowns=CountMapReducer(traffic_counters()).reduce(rows),
            created=day_floor(day),
            **counts.as_fields(),
        )

        edge_ids = [row["edge_id"] for row in rows]
        tags = await self._tag_frequency(PageViewPathTag, "page_view_path_id", edge_ids)
        for tag_id, stat_count in tags.counts.items():
            await upsert_sub_row(
                self.session, PageStatTag, "page_stat_id", page_stat.id, "tag_id", int(tag_id), stat_count
            )

        actions = await self._action_frequency(edge_ids, day)
        for action_type_id, stat_count in actions.counts.items():
            await upsert_sub_row(
                self.session, PageStatAction, "page_stat_id", page_stat.id,
                "action_type_id", int(action_type_id), stat_count,
            )

        logger.debug(
            "Page stat generated",
            client_id=client_id,
            page_id=page_id,
            day=stat_value.name,
            total_count=counts.total_count,
            tags=len(tags),
            action_types=len(actions),
        )
        return page_stat


class ActionStatGenerator(StatGenerator):
    """Daily actions per action type performed on one page"""

    async def generate(self, page_stat: PageStat, day: DateLike, stat_value: StatValue) -> List[ActionStat]:
        rows = await load_action_edges(self.session, day, PageView.page_id == page_stat.page_id)
        page_total = len(rows)
        if not page_total:
            return []

        stats = []
        for action_type_id, members in group_rows(rows, lambda row: row["action_type_id"]).items():
            users = {row["user_id"] for row in members if row["user_id"] is not None}
            stats.append(await self.repo.insert(
                ActionStat,
                client_id=page_stat.client_id,
                page_stat_id=page_stat.id,
                action_type_id=action_type_id,
                stat_value_id=stat_value.id,
                total_count=len(members),
                unique_count=len(users),
                popularity=len(members) / page_total,
                breakdowns=CountMapReducer(action_counters()).reduce(members),
                created=day_floor(day),
            ))

        logger.debug(
            "Action stats generated",
            page_id=page_stat.page_id,
            day=stat_value.name,
            action_types=len(stats),
            actions=page_total,
        )
        return stats


class PathStatGenerator(StatGenerator):
    """Daily occurrences of each materialized path on a client's pages"""

    async def generate(self, client_id: int, day: DateLike, stat_value: StatValue) -> List[PathStat]:
        rows = await load_page_view_edges(self.session, day, Page.client_id == client_id)
        index = await EdgeIndex.build(self.session, PageViewPath, rows)

        stats = []
        for path, members in group_rows(rows, lambda row: row["path"]).items():
            first = members[0]
            path_stat = await self.repo.insert(
                PathStat,
                client_id=client_id,
                stat_value_id=stat_value.id,
                path=path,
                from_page_id=first["from_page_id"],
                to_page_id=first["page_id"],
                index=first["index"],
                stat_count=len(members),
                unique_count=len({row["user_id"] for row in members if row["user_id"] is not None}),
                exit_count=sum(1 for row in members if not index.has_child(row)),
                created=day_floor(day),
            )

            edge_ids = [row["edge_id"] for row in members]
            tags = await self._tag_frequency(PageViewPathTag, "page_view_path_id", edge_ids)
            tags = tags.merge(await self._action_tag_frequency(edge_ids, day))
            for tag_id, stat_count in tags.counts.items():
                await upsert_sub_row(
                    self.session, PathStatTag, "path_stat_id", path_stat.id, "tag_id", int(tag_id), stat_count
                )
            actions = await self._action_frequency(edge_ids, day)
            for action_type_id, stat_count in actions.counts.items():
                await upsert_sub_row(
                    self.session, PathStatAction, "path_stat_id", path_stat.id,
                    "action_type_id", int(action_type_id), stat_count,
                )
            stats.append(path_stat)

        logger.debug("Path stats generated", client_id=client_id, day=stat_value.name, paths=len(stats))
        return stats


class ReferrerStatGenerator(StatGenerator):
    """Daily traffic per external referrer"""

    async def generate(self, client_id: int, day: DateLike, stat_value: StatValue) -> List[ReferrerStat]:
        rows = await load_page_view_edges(
            self.session, day, Page.client_id == client_id, PageViewPath.referrer_id.is_not(None)
        )
        index = await EdgeIndex.build(self.session, PageViewPath, rows)

        stats = []
        for referrer_id, members in group_rows(rows, lambda row: row["referrer_id"]).items():
            counts = index.counts(members, self.entry_window)
            stats.append(await self.repo.insert(
                ReferrerStat,
                client_id=client_id,
                referrer_id=referrer_id,
                stat_value_id=stat_value.id,
                breakdowns=CountMapReducer(traffic_counters()).reduce(members),
                created=day_floor(day),
                **counts.as_fields(),
            ))

        logger.debug("Referrer stats generated", client_id=client_id, day=stat_value.name, referrers=len(stats))
        return stats


class UserStatGenerator(StatGenerator):
    """Daily journey summary per identified user"""

    async def generate(self, client_id: int, day: DateLike, stat_value: StatValue) -> List[UserStat]:
        rows = await load_page_view_edges(
            self.session, day, Page.client_id == client_id, PageViewPath.user_id.is_not(None)
        )
        index = await EdgeIndex.build(self.session, PageViewPath, rows)

        stats = []
        for user_id, members in group_rows(rows, lambda row: row["user_id"]).items():
            counts = index.counts(members, self.entry_window)
            counters = traffic_counters()
            counters["pages"] = Counter(lambda row: row["page_id"])
            stats.append(await self.repo.insert(
                UserStat,
                client_id=client_id,
                user_id=user_id,
                stat_value_id=stat_value.id,
                breakdowns=CountMapReducer(counters).reduce(members),
                created=day_floor(day),
                **counts.as_fields(),
            ))

        logger.debug("User stats generated", client_id=client_id, day=stat_value.name, users=len(stats))
        return stats
