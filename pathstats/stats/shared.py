"""
Shared aggregation helpers.

Loads a day's edges as flat rows, computes the traffic measures every
aggregate family carries, and manages the StatValue bucket keys.
"""

from collections import defaultdict
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Hashable, Iterable, List, Set, Type

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from pathstats.database.models import (
    Action,
    ActionPath,
    IpLocation,
    Page,
    PageView,
    PageViewPath,
    Referrer,
    StatType,
    StatValue,
)
from pathstats.database.repository import Repository, created_between, in_set
from pathstats.errors import AggregateConflict
from pathstats.utils.dates import DateLike, day_bounds, day_floor, epoch_seconds
from pathstats.utils.sequence import batched

logger = structlog.get_logger(__name__)

DATE = "date"

# A flattened edge joined with its event, location and referrer.
#   edge_id, parent_id, root_id, user_id, referrer_id, path, index,
#   edge_created, created (the event's timestamp), page_id, from_page_id,
#   user_agent, country, country_code, city, state, referrer_host,
#   and for action edges: action_type_id, meta_data, page_view_path_id
EdgeRow = Dict[str, Any]


# =============================================================================
# BUCKET KEYS
# =============================================================================

async def get_stat_type(session: AsyncSession, name: str) -> StatType:
    stat_type, _ = await Repository(session).get_or_create(StatType, {"name": name})
    return stat_type


async def stat_value_for_date(session: AsyncSession, day: DateLike) -> StatValue:
    """The "date" StatValue for the UTC day containing ``day``"""
    floor = day_floor(day)
    stat_type = await get_stat_type(session, DATE)
    stat_value, _ = await Repository(session).get_or_create(
        StatValue,
        {"stat_type_id": stat_type.id, "value": epoch_seconds(floor)},
        {"name": floor.date().isoformat()},
    )
    return stat_value


# =============================================================================
# EDGE LOADING
# =============================================================================

async def load_page_view_edges(session: AsyncSession, day: DateLike, *predicates) -> List[EdgeRow]:
    """
    Page view edges whose target page view was created on ``day``.

    Extra predicates narrow the scope (client, page, referrer, ...).
    Rows are ordered by edge id.
    """
    lo, hi = day_bounds(day)
    source_view = aliased(PageView)
    query = (
        select(
            PageViewPath.id.label("edge_id"),
            PageViewPath.parent_id,
            PageViewPath.root_id,
            PageViewPath.user_id,
            PageViewPath.referrer_id,
            PageViewPath.path,
            PageViewPath.index,
            PageViewPath.created.label("edge_created"),
            PageView.created.label("created"),
            PageView.page_id,
            PageView.user_agent,
            source_view.page_id.label("from_page_id"),
            IpLocation.country,
            IpLocation.country_code,
            IpLocation.city,
            IpLocation.state,
            Referrer.host.label("referrer_host"),
        )
        .join(PageView, PageView.id == PageViewPath.to_page_view_id)
        .join(Page, Page.id == PageView.page_id)
        .outerjoin(source_view, source_view.id == PageViewPath.from_page_view_id)
        .outerjoin(IpLocation, IpLocation.id == PageViewPath.ip_location_id)
        .outerjoin(Referrer, Referrer.id == PageViewPath.referrer_id)
        .where(created_between(PageView.created, lo, hi), *predicates)
        .order_by(PageViewPath.id)
    )
    result = await session.execute(query)
    return [dict(row._mapping) for row in result]


async def load_action_edges(session: AsyncSession, day: DateLike, *predicates) -> List[EdgeRow]:
    """
    Action edges whose action was created on ``day``, joined through their
    anchoring page view path to the page the action happened on.
    """
    lo, hi = day_bounds(day)
    query = (
        select(
            ActionPath.id.label("edge_id"),
            ActionPath.parent_id,
            ActionPath.root_id,
            ActionPath.user_id,
            ActionPath.referrer_id,
            ActionPath.path,
            ActionPath.index,
            ActionPath.page_view_path_id,
            ActionPath.created.label("edge_created"),
            Action.created.label("created"),
            Action.action_type_id,
            Action.meta_data,
            PageView.page_id,
            PageView.user_agent,
            IpLocation.country,
            IpLocation.country_code,
            IpLocation.city,
            IpLocation.state,
            Referrer.host.label("referrer_host"),
        )
        .join(Action, Action.id == ActionPath.to_action_id)
        .join(PageViewPath, PageViewPath.id == ActionPath.page_view_path_id)
        .join(PageView, PageView.id == PageViewPath.to_page_view_id)
        .join(Page, Page.id == PageView.page_id)
        .outerjoin(IpLocation, IpLocation.id == ActionPath.ip_location_id)
        .outerjoin(Referrer, Referrer.id == ActionPath.referrer_id)
        .where(created_between(Action.created, lo, hi), *predicates)
        .order_by(ActionPath.id)
    )
    result = await session.execute(query)
    return [dict(row._mapping) for row in result]


def group_rows(rows: Iterable[EdgeRow], key: Callable[[EdgeRow], Hashable]) -> Dict[Any, List[EdgeRow]]:
    """Group rows by ``key``, skipping rows whose key is None; groups keep row order"""
    groups: Dict[Any, List[EdgeRow]] = defaultdict(list)
    for row in rows:
        value = key(row)
        if value is not None:
            groups[value].append(row)
    return dict(sorted(groups.items(), key=lambda item: str(item[0])))


# =============================================================================
# TRAFFIC MEASURES
# =============================================================================

@dataclass
class Counts:
    """Measures shared by the aggregate families"""
    total_count: int = 0
    unique_count: int = 0
    bounce_count: int = 0
    entry_count: int = 0
    exit_count: int = 0
    session_count: int = 0

    def as_fields(self) -> Dict[str, int]:
        return asdict(self)


class EdgeIndex:
    """
    Chain context for a set of edges: which edges have children anywhere,
    and when each parent edge was created.

    Build once per scope and day, then compute counts for any subset.
    """

    def __init__(self, with_children: Set[int], parent_created: Dict[int, datetime]):
        self.with_children = with_children
        self.parent_created = parent_created

    @classmethod
    async def build(cls, session: AsyncSession, edge_model: Type[Any], rows: List[EdgeRow]) -> "EdgeIndex":
        edge_ids = [row["edge_id"] for row in rows]
        parent_ids = sorted({row["parent_id"] for row in rows if row["parent_id"] is not None})

        with_children: Set[int] = set()
        for chunk in batched(edge_ids):
            result = await session.execute(
                select(edge_model.parent_id).where(in_set(edge_model.parent_id, chunk)).distinct()
            )
            with_children.update(result.scalars().all())

        parent_created: Dict[int, datetime] = {}
        for chunk in batched(parent_ids):
            result = await session.execute(
                select(edge_model.id, edge_model.created).where(in_set(edge_model.id, chunk))
            )
            parent_created.update({edge_id: created for edge_id, created in result.all()})

        return cls(with_children, parent_created)

    def has_child(self, row: EdgeRow) -> bool:
        return row["edge_id"] in self.with_children

    def is_entry(self, row: EdgeRow, entry_window: timedelta) -> bool:
        if row["parent_id"] is None:
            return True
        parent_created = self.parent_created.get(row["parent_id"])
        if parent_created is None:
            return True
        return row["edge_created"] - parent_created > entry_window

    def counts(self, rows: List[EdgeRow], entry_window: timedelta) -> Counts:
        """
        Traffic measures over ``rows``.

        A bounce is a chain with exactly one edge in ``rows`` where that edge
        neither continues a parent nor is continued by a child.
        """
        chains: Dict[int, List[EdgeRow]] = defaultdict(list)
        for row in rows:
            chains[chain_of(row)].append(row)

        bounces = sum(
            1
            for members in chains.values()
            if len(members) == 1
            and members[0]["parent_id"] is None
            and not self.has_child(members[0])
        )
        return Counts(
            total_count=len(rows),
            unique_count=len({row["user_id"] for row in rows if row["user_id"] is not None}),
            bounce_count=bounces,
            entry_count=sum(1 for row in rows if self.is_entry(row, entry_window)),
            exit_count=sum(1 for row in rows if not self.has_child(row)),
            session_count=len(chains),
        )


def chain_of(row: EdgeRow) -> int:
    return row["root_id"] if row["root_id"] is not None else row["edge_id"]


# =============================================================================
# SUB-ROW UPSERT
# =============================================================================

async def insert_sub_row(
    session: AsyncSession,
    model: Type[Any],
    parent_column: str,
    parent_id: int,
    key_column: str,
    key: int,
    stat_count: int,
):
    """
    Insert a frequency sub-row.

    Raises:
        AggregateConflict: A row for (parent, key) already exists
    """
    repo = Repository(session)
    existing = await repo.select_one_where(
        model,
        getattr(model, parent_column) == parent_id,
        getattr(model, key_column) == key,
    )
    if existing is not None:
        raise AggregateConflict(model.__tablename__, existing)
    return await repo.insert(model, **{parent_column: parent_id, key_column: key, "stat_count": stat_count})


async def upsert_sub_row(
    session: AsyncSession,
    model: Type[Any],
    parent_column: str,
    parent_id: int,
    key_column: str,
    key: int,
    stat_count: int,
):
    """Insert a frequency sub-row, or overwrite the count of the existing one"""
    try:
        return await insert_sub_row(session, model, parent_column, parent_id, key_column, key, stat_count)
    except AggregateConflict as e:
        logger.debug("Sub-row exists, updating count", table=e.table, row_id=e.existing.id)
        e.existing.stat_count = stat_count
        await session.flush()
        return e.existing
