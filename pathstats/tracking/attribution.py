"""
Attribution Resolver

Decides where a newly recorded page view attaches in the session graph.

A referrer on one of the client's own pages continues the user's most
recent chain through that page. An external referrer seen before continues
the user's most recent chain that came in through it. Anything else starts a
new chain. A referrer that cannot be resolved never blocks ingestion: the
view just becomes a root.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pathstats.config import get_settings
from pathstats.database.models import (
    ActionPath,
    ActionTag,
    ActionType,
    Domain,
    Page,
    PageView,
    PageViewPath,
    PageViewPathTag,
)
from pathstats.database.repository import Repository, in_set
from pathstats.errors import AttributionAmbiguous, NotFound
from pathstats.tracking.geolocation import GeoResolver, get_or_create_ip_location
from pathstats.tracking.paths import ACTION_PATHS, PAGE_VIEW_PATHS, PathChain
from pathstats.tracking.referrers import ParsedUrl, get_or_create_referrer, get_referrer_for_url, lift_url
from pathstats.utils.dates import utcnow

logger = structlog.get_logger(__name__)


@dataclass
class Attribution:
    """Where a new edge attaches"""
    parent_id: Optional[int] = None
    referrer_id: Optional[int] = None
    internal: bool = False


class AttributionResolver:
    """
    Chains new page views into the session graph.

    Args:
        session: Session the edges are written in
        geo_resolver: Lookup for unseen IP addresses (None disables lookups)
        now: Clock used for the continuation window and row timestamps
        window: How far back a chain may still be continued
    """

    def __init__(
        self,
        session: AsyncSession,
        geo_resolver: Optional[GeoResolver] = None,
        now: Callable[[], datetime] = utcnow,
        window: Optional[timedelta] = None,
    ):
        self.session = session
        self.repo = Repository(session)
        self.geo_resolver = geo_resolver
        self.now = now
        if window is None:
            window = timedelta(hours=get_settings().attribution.session_window_hours)
        self.window = window
        self.page_view_paths = PathChain(session, PAGE_VIEW_PATHS)
        self.action_paths = PathChain(session, ACTION_PATHS)

    async def resolve(
        self,
        client_id: int,
        to_page_view_id: int,
        user_id: Optional[int] = None,
        referrer_url: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> PageViewPath:
        """
        Insert the edge for an existing page view.

        Raises:
            NotFound: The page view does not exist
        """
        page_view = await self.repo.get_by_id(PageView, to_page_view_id)
        if page_view is None:
            raise NotFound(PageView.__tablename__, to_page_view_id)
        if user_id is None:
            user_id = page_view.user_id

        ip_location_id = await self._ip_location_id(ip_address)
        attribution = await self.attribute(client_id, user_id, referrer_url)

        edge = await self.page_view_paths.insert_edge(
            attribution.parent_id,
            to_page_view_id,
            user_id=user_id,
            referrer_id=attribution.referrer_id,
            ip_location_id=ip_location_id,
            created=self.now(),
        )
        logger.debug(
            "Page view attributed",
            client_id=client_id,
            edge_id=edge.id,
            parent_id=edge.parent_id,
            referrer_id=edge.referrer_id,
            internal=attribution.internal,
        )
        return edge

    async def _ip_location_id(self, ip_address: Optional[str]) -> Optional[int]:
        try:
            location = await get_or_create_ip_location(self.session, ip_address, self.geo_resolver)
        except Exception as e:
            logger.warning("IP location unavailable", ip_address=ip_address, error=str(e))
            return None
        return location.id if location is not None else None

    async def attribute(
        self,
        client_id: int,
        user_id: Optional[int],
        referrer_url: Optional[str],
    ) -> Attribution:
        """Pick the parent edge and referrer for a new page view"""
        if not referrer_url:
            return Attribution()
        try:
            parsed = lift_url(referrer_url)
            page = await self._client_page(client_id, parsed)
            if page is not None:
                parent = await self._latest_edge_on_page(user_id, page.id)
                return Attribution(parent_id=parent.id if parent else None, internal=True)

            referrer = await get_referrer_for_url(self.session, referrer_url)
            if referrer is not None:
                parent = await self._latest_edge_with_referrer(client_id, user_id, referrer.id)
                if parent is not None:
                    return Attribution(parent_id=parent.id, referrer_id=referrer.id)
            else:
                referrer = await get_or_create_referrer(self.session, referrer_url)
            return Attribution(referrer_id=referrer.id)
        except AttributionAmbiguous as e:
            logger.warning("Referrer not attributable", client_id=client_id, error=str(e))
        except Exception as e:
            logger.error(
                "Attribution failed, starting a new chain",
                client_id=client_id,
                error=str(e),
                error_type=type(e).__name__,
            )
        return Attribution()

    async def _client_page(self, client_id: int, parsed: ParsedUrl) -> Optional[Page]:
        """
        The client page ``parsed`` points at, or None for foreign hosts.

        Raises:
            AttributionAmbiguous: The host is the client's but no page matches
        """
        domains = await self.repo.select_where(
            Domain,
            Domain.client_id == client_id,
            in_set(Domain.host, {parsed.hostname, parsed.host}),
        )
        if not domains:
            return None

        candidates = {parsed.path, parsed.path.rstrip("/") or "/"}
        if not parsed.path.endswith("/"):
            candidates.add(parsed.path + "/")
        page = await self.repo.select_one_where(
            Page,
            Page.client_id == client_id,
            in_set(Page.domain_id, [domain.id for domain in domains]),
            in_set(Page.path, candidates),
            order_by=[Page.id],
        )
        if page is None:
            raise AttributionAmbiguous(f"No page of client {client_id} matches {parsed.href}")
        return page

    async def _latest_edge_on_page(self, user_id: Optional[int], page_id: int) -> Optional[PageViewPath]:
        if user_id is None:
            return None
        query = (
            select(PageViewPath)
            .join(PageView, PageView.id == PageViewPath.to_page_view_id)
            .where(
                PageView.page_id == page_id,
                PageViewPath.user_id == user_id,
                PageViewPath.created > self.now() - self.window,
            )
            .order_by(PageViewPath.created.desc(), PageViewPath.id.desc())
            .limit(1)
        )
        result = await self.session.execute(query)
        return result.scalars().first()

    async def _latest_edge_with_referrer(
        self,
        client_id: int,
        user_id: Optional[int],
        referrer_id: int,
    ) -> Optional[PageViewPath]:
        if user_id is None:
            return None
        query = (
            select(PageViewPath)
            .join(PageView, PageView.id == PageViewPath.to_page_view_id)
            .join(Page, Page.id == PageView.page_id)
            .where(
                Page.client_id == client_id,
                PageViewPath.user_id == user_id,
                PageViewPath.referrer_id == referrer_id,
                PageViewPath.created > self.now() - self.window,
            )
            .order_by(PageViewPath.created.desc(), PageViewPath.id.desc())
            .limit(1)
        )
        result = await self.session.execute(query)
        return result.scalars().first()

    async def record_page_view(
        self,
        client_id: int,
        page_id: int,
        user_id: Optional[int] = None,
        referrer_url: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        tag_ids: Iterable[int] = (),
    ) -> PageViewPath:
        """
        Create a page view and chain it.

        Raises:
            NotFound: The page does not exist or belongs to another client
        """
        page = await self.repo.get_by_id(Page, page_id)
        if page is None or page.client_id != client_id:
            raise NotFound(Page.__tablename__, page_id)

        page_view = await self.repo.insert(
            PageView,
            page_id=page_id,
            user_id=user_id,
            user_agent=user_agent,
            active=True,
            created=self.now(),
        )
        edge = await self.resolve(client_id, page_view.id, user_id, referrer_url, ip_address)
        for tag_id in sorted(set(tag_ids)):
            await self.repo.insert(PageViewPathTag, page_view_path_id=edge.id, tag_id=tag_id)
        return edge

    async def record_actions(
        self,
        page_view_path_id: int,
        actions: List[Mapping[str, Any]],
    ) -> List[ActionPath]:
        """
        Create a batch of actions performed during one page view and chain
        them after the latest action already recorded for it.

        Each item carries ``action_type_id``, optional ``meta_data`` and
        optional ``tag_ids``.

        Raises:
            NotFound: The page view path or an action type does not exist
        """
        page_view_path = await self.repo.get_by_id(PageViewPath, page_view_path_id)
        if page_view_path is None:
            raise NotFound(PageViewPath.__tablename__, page_view_path_id)

        for item in actions:
            if await self.repo.get_by_id(ActionType, item["action_type_id"]) is None:
                raise NotFound(ActionType.__tablename__, item["action_type_id"])

        latest = await self.repo.select_one_where(
            ActionPath,
            ActionPath.page_view_path_id == page_view_path_id,
            order_by=[ActionPath.created.desc(), ActionPath.id.desc()],
        )

        edges: List[ActionPath] = []
        chain = self.action_paths.chain
        parent: Dict[str, Any] = {"parent_id": latest.id if latest else None}
        for item in actions:
            created = self.now()
            link = await chain({
                **parent,
                "action": {
                    "action_type_id": item["action_type_id"],
                    "meta_data": item.get("meta_data"),
                    "created": created,
                },
                "page_view_path_id": page_view_path_id,
                "user_id": page_view_path.user_id,
                "referrer_id": page_view_path.referrer_id,
                "ip_location_id": page_view_path.ip_location_id,
                "created": created,
            })
            for tag_id in sorted(set(item.get("tag_ids", ()))):
                await self.repo.insert(ActionTag, action_id=link.data.to_action_id, tag_id=tag_id)
            edges.append(link.data)
            chain = link.chain
            parent = {}

        logger.debug("Actions recorded", page_view_path_id=page_view_path_id, count=len(edges))
        return edges
