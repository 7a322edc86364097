"""
Path Chain Model

Chains events into trees of edges. Every edge stores a materialized path:
the parent's path with one ``{kind}{id}-i{index}`` segment appended, so a
chain's subtree is a prefix range query. Page view edges and action edges
share one insertion algorithm, described by an ``EdgeSpec``.
"""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple, Type

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from pathstats.database.models import Action, ActionPath, Base, PageView, PageViewPath
from pathstats.database.repository import Repository
from pathstats.errors import NotFound

logger = structlog.get_logger(__name__)

PATH_SEPARATOR = ","

STRUCTURAL_COLUMNS = frozenset({"id", "parent_id", "root_id", "path", "index", "depth"})


def append_segment(parent_path: Optional[str], segment: str) -> str:
    if not parent_path:
        return segment
    return f"{parent_path}{PATH_SEPARATOR}{segment}"


def page_view_segment(page_view: PageView, index: int) -> str:
    return f"p{page_view.page_id}-i{index}"


def action_segment(action: Action, index: int) -> str:
    return f"t{action.action_type_id}-i{index}"


@dataclass(frozen=True)
class EdgeSpec:
    """Describes one kind of chain edge"""
    edge_model: Type[Base]
    event_model: Type[Base]
    target_column: str
    source_column: str
    event_key: str
    segment: Callable[[Any, int], str]
    inherited: Tuple[str, ...]

    @property
    def name(self) -> str:
        return self.edge_model.__tablename__


PAGE_VIEW_PATHS = EdgeSpec(
    edge_model=PageViewPath,
    event_model=PageView,
    target_column="to_page_view_id",
    source_column="from_page_view_id",
    event_key="page_view",
    segment=page_view_segment,
    inherited=("referrer_id", "ip_location_id", "user_id"),
)

ACTION_PATHS = EdgeSpec(
    edge_model=ActionPath,
    event_model=Action,
    target_column="to_action_id",
    source_column="from_action_id",
    event_key="action",
    segment=action_segment,
    inherited=("referrer_id", "ip_location_id", "user_id", "page_view_path_id"),
)


@dataclass
class ChainLink:
    """An inserted edge plus a continuation that inserts its child"""
    data: Any
    chain: Callable[[Mapping[str, Any]], Awaitable["ChainLink"]]


class PathChain:
    """
    Inserts edges of one kind with parent-derived fields filled in.

    Example:
        paths = PathChain(session, PAGE_VIEW_PATHS)
        root = await paths.insert_edge(None, first_view.id, referrer_id=3)
        child = await paths.insert_edge(root.id, second_view.id)
        assert child.referrer_id == 3
    """

    def __init__(self, session: AsyncSession, spec: EdgeSpec):
        self.session = session
        self.spec = spec
        self.repo = Repository(session)

    async def insert_edge(self, parent_id: Optional[int], to_id: int, **explicit_fields: Any):
        """
        Insert one edge pointing at event ``to_id``.

        Index, depth, source event and path come from the parent. Inherited
        columns take the explicit value when one is given (not None), else
        the parent's value.

        Raises:
            NotFound: The parent edge or the target event does not exist
        """
        spec = self.spec
        reserved = STRUCTURAL_COLUMNS.intersection(explicit_fields)
        if reserved:
            raise ValueError(f"Cannot set structural columns on {spec.name}: {sorted(reserved)}")

        parent = None
        if parent_id is not None:
            parent = await self.repo.get_by_id(spec.edge_model, parent_id)
            if parent is None:
                raise NotFound(spec.name, parent_id)

        target = await self.repo.get_by_id(spec.event_model, to_id)
        if target is None:
            raise NotFound(spec.event_model.__tablename__, to_id)

        index = parent.index + 1 if parent is not None else 0
        fields: Dict[str, Any] = dict(explicit_fields)
        for column in spec.inherited:
            value = explicit_fields.get(column)
            if value is None and parent is not None:
                value = getattr(parent, column)
            fields[column] = value

        fields[spec.target_column] = to_id
        fields[spec.source_column] = getattr(parent, spec.target_column) if parent is not None else None

        edge = await self.repo.insert(
            spec.edge_model,
            parent_id=parent_id,
            root_id=parent.root_id if parent is not None else None,
            path=append_segment(parent.path if parent is not None else None, spec.segment(target, index)),
            index=index,
            depth=index,
            **fields,
        )
        if parent is None:
            edge.root_id = edge.id
            await self.session.flush()

        logger.debug(
            "Edge inserted",
            table=spec.name,
            edge_id=edge.id,
            parent_id=parent_id,
            path=edge.path,
        )
        return edge

    async def chain(self, data: Mapping[str, Any]) -> ChainLink:
        """
        Insert an edge from ``data`` and return it with a continuation.

        ``data`` names its target either by the target column or by an event
        mapping under ``spec.event_key``, in which case the event row is
        created first. The continuation inserts the next edge as a child.
        """
        fields = dict(data)
        parent_id = fields.pop("parent_id", None)
        event_fields = fields.pop(self.spec.event_key, None)
        if event_fields is not None:
            event = await self.repo.insert(self.spec.event_model, **event_fields)
            to_id = event.id
        elif self.spec.target_column in fields:
            to_id = fields.pop(self.spec.target_column)
        else:
            raise ValueError(
                f"{self.spec.name} needs either '{self.spec.target_column}' or '{self.spec.event_key}'"
            )

        edge = await self.insert_edge(parent_id, to_id, **fields)

        async def next_link(child: Mapping[str, Any]) -> ChainLink:
            return await self.chain({**child, "parent_id": edge.id})

        return ChainLink(data=edge, chain=next_link)

    async def map_sequence(self, items: List[Mapping[str, Any]]) -> List[int]:
        """Chain ``items`` one after another; returns the new edge ids in order"""
        ids: List[int] = []
        chain = self.chain
        for item in items:
            link = await chain(item)
            ids.append(link.data.id)
            chain = link.chain
        return ids

    async def subtree(self, edge) -> List[Any]:
        """Descendants of ``edge``, shallowest first"""
        model = self.spec.edge_model
        return await self.repo.select_where(
            model,
            model.root_id == edge.root_id,
            model.path.startswith(f"{edge.path}{PATH_SEPARATOR}", autoescape=True),
            order_by=[model.index, model.id],
        )


def page_view_paths(session: AsyncSession) -> PathChain:
    return PathChain(session, PAGE_VIEW_PATHS)


def action_paths(session: AsyncSession) -> PathChain:
    return PathChain(session, ACTION_PATHS)


_MISSING = object()


async def lift_action_path(
    session: AsyncSession,
    page_view_path_id: int,
    action_id: int,
    parent_id: Any = _MISSING,
    **fields: Any,
) -> ActionPath:
    """
    Attach an existing action to the action chain of a page view path.

    Without an explicit ``parent_id`` the most recent action edge of that
    page view path becomes the parent.
    """
    if parent_id is _MISSING:
        latest = await Repository(session).select_one_where(
            ActionPath,
            ActionPath.page_view_path_id == page_view_path_id,
            order_by=[ActionPath.created.desc(), ActionPath.id.desc()],
        )
        parent_id = latest.id if latest is not None else None

    return await action_paths(session).insert_edge(
        parent_id,
        action_id,
        page_view_path_id=page_view_path_id,
        **fields,
    )


async def set_active(session: AsyncSession, page_view_id: int, active: bool) -> PageView:
    """Flip a page view's ``active`` flag, the one mutation page views allow"""
    rows = await Repository(session).update_where(
        PageView, [PageView.id == page_view_id], {"active": active}
    )
    if not rows:
        raise NotFound(PageView.__tablename__, page_view_id)
    return rows[0]
