"""
Persistence Interface

Thin, entity-agnostic data access used by the path model, the attribution
resolver and the stat generators. Every call runs inside the caller's
session; committing is the caller's job.
"""

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Type, TypeVar

import structlog
from sqlalchemy import and_, delete, false, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql import ColumnElement

from pathstats.database.models import Base

logger = structlog.get_logger(__name__)

ModelT = TypeVar("ModelT", bound=Base)


def created_between(column, min_value: datetime, max_value: datetime) -> ColumnElement:
    """Half-open ``[min, max)`` window predicate on a timestamp column"""
    return and_(column >= min_value, column < max_value)


def in_set(column, ids: Iterable[Any]) -> ColumnElement:
    """``column IN ids``; an empty set matches nothing"""
    values = list(ids)
    if not values:
        return false()
    return column.in_(values)


class Repository:
    """
    Session-bound persistence helper.

    Example:
        repo = Repository(session)
        page_view = await repo.insert(PageView, page_id=1, user_id=7)
        edges = await repo.select_where(PageViewPath, PageViewPath.user_id == 7)
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def insert(self, entity: Type[ModelT], **fields: Any) -> ModelT:
        """Insert a row and flush so its id is populated"""
        record = entity(**fields)
        self.session.add(record)
        await self.session.flush()
        return record

    async def get_by_id(self, entity: Type[ModelT], entity_id: Optional[int]) -> Optional[ModelT]:
        if entity_id is None:
            return None
        return await self.session.get(entity, entity_id)

    async def select_where(
        self,
        entity: Type[ModelT],
        *predicates: ColumnElement,
        order_by: Optional[Sequence[Any]] = None,
        limit: Optional[int] = None,
    ) -> List[ModelT]:
        query = select(entity).where(*predicates)
        if order_by is not None:
            query = query.order_by(*order_by)
        if limit is not None:
            query = query.limit(limit)
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def select_one_where(
        self,
        entity: Type[ModelT],
        *predicates: ColumnElement,
        order_by: Optional[Sequence[Any]] = None,
    ) -> Optional[ModelT]:
        """First matching row, or None"""
        rows = await self.select_where(entity, *predicates, order_by=order_by, limit=1)
        return rows[0] if rows else None

    async def delete_where(self, entity: Type[ModelT], *predicates: ColumnElement) -> int:
        """Bulk delete; returns the number of rows removed"""
        result = await self.session.execute(
            delete(entity).where(*predicates).execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    async def update_where(
        self,
        entity: Type[ModelT],
        predicates: Sequence[ColumnElement],
        fields: Dict[str, Any],
    ) -> List[ModelT]:
        """Set ``fields`` on every matching row and return the updated rows"""
        rows = await self.select_where(entity, *predicates)
        for row in rows:
            for name, value in fields.items():
                setattr(row, name, value)
        await self.session.flush()
        return rows

    async def get_or_create(
        self,
        entity: Type[ModelT],
        lookup: Dict[str, Any],
        defaults: Optional[Dict[str, Any]] = None,
    ) -> Tuple[ModelT, bool]:
        """
        Fetch the row matching ``lookup`` or insert it.

        Returns:
            (record, created)
        """
        predicates = [getattr(entity, name) == value for name, value in lookup.items()]
        existing = await self.select_one_where(entity, *predicates)
        if existing is not None:
            return existing, False

        record = await self.insert(entity, **lookup, **(defaults or {}))
        logger.debug("Row created", table=entity.__tablename__, id=record.id)
        return record, True
