"""
Removal of a client's aggregates for one day, ahead of regeneration.
"""

from typing import Dict

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

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
    UserStat,
)
from pathstats.database.repository import Repository

logger = structlog.get_logger(__name__)


async def clear_client_day(session: AsyncSession, client_id: int, stat_value_id: int) -> Dict[str, int]:
    """
    Delete every aggregate row of ``client_id`` keyed to ``stat_value_id``.

    Sub-rows go before their parents.

    Returns:
        Rows deleted per table
    """
    repo = Repository(session)
    page_stat_ids = (
        select(PageStat.id)
        .where(PageStat.client_id == client_id, PageStat.stat_value_id == stat_value_id)
        .scalar_subquery()
    )
    path_stat_ids = (
        select(PathStat.id)
        .where(PathStat.client_id == client_id, PathStat.stat_value_id == stat_value_id)
        .scalar_subquery()
    )
    of_client_day = {
        "client_id": client_id,
        "stat_value_id": stat_value_id,
    }

    deleted = {
        PageStatTag.__tablename__: await repo.delete_where(PageStatTag, PageStatTag.page_stat_id.in_(page_stat_ids)),
        PageStatAction.__tablename__: await repo.delete_where(
            PageStatAction, PageStatAction.page_stat_id.in_(page_stat_ids)
        ),
        ActionStat.__tablename__: await repo.delete_where(
            ActionStat, *(getattr(ActionStat, k) == v for k, v in of_client_day.items())
        ),
        PageStat.__tablename__: await repo.delete_where(
            PageStat, *(getattr(PageStat, k) == v for k, v in of_client_day.items())
        ),
        PathStatTag.__tablename__: await repo.delete_where(PathStatTag, PathStatTag.path_stat_id.in_(path_stat_ids)),
        PathStatAction.__tablename__: await repo.delete_where(
            PathStatAction, PathStatAction.path_stat_id.in_(path_stat_ids)
        ),
        PathStat.__tablename__: await repo.delete_where(
            PathStat, *(getattr(PathStat, k) == v for k, v in of_client_day.items())
        ),
        ReferrerStat.__tablename__: await repo.delete_where(
            ReferrerStat, *(getattr(ReferrerStat, k) == v for k, v in of_client_day.items())
        ),
        UserStat.__tablename__: await repo.delete_where(
            UserStat, *(getattr(UserStat, k) == v for k, v in of_client_day.items())
        ),
        ClientStat.__tablename__: await repo.delete_where(
            ClientStat, *(getattr(ClientStat, k) == v for k, v in of_client_day.items())
        ),
    }

    removed = sum(deleted.values())
    if removed:
        logger.info("Cleared existing aggregates", client_id=client_id, stat_value_id=stat_value_id, rows=removed)
    return deleted
