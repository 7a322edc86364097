"""
Synthetic Journey Generator

Generates realistic visitor journeys for demos, load tests and local
development, and records them through the attribution resolver so the
resulting session graph looks like ingested traffic.
"""

import random
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence, Tuple

import structlog
from faker import Faker
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pathstats.database.models import ActionType, Domain, Page
from pathstats.tracking.attribution import AttributionResolver
from pathstats.tracking.geolocation import GeoResolver
from pathstats.utils.dates import DateLike, day_floor

logger = structlog.get_logger(__name__)


# =============================================================================
# CONFIGURATION
# =============================================================================

REFERRER_SOURCES = [
    ("https://www.google.com/search", 0.45),
    ("https://duckduckgo.com/", 0.10),
    ("https://twitter.com/", 0.10),
    ("https://news.ycombinator.com/item", 0.05),
    (None, 0.30),
]

ACTION_TARGETS = ["cta", "nav", "footer", "signup-form", "search", "pricing-table"]


@dataclass
class PlannedVisit:
    """One page view inside a journey"""
    page_id: int
    at: datetime
    actions: List[Dict] = field(default_factory=list)


@dataclass
class Journey:
    """A visitor's walk through a client's pages"""
    user_id: Optional[int]
    user_agent: str
    ip_address: str
    referrer_url: Optional[str]
    visits: List[PlannedVisit] = field(default_factory=list)


# =============================================================================
# GENERATORS
# =============================================================================

class JourneyGenerator:
    """
    Generate realistic visitor journeys.

    Journeys start at a random time of the day, come from a search engine,
    social site or nowhere, and walk 1-6 pages a few minutes apart, with
    occasional actions on each page.

    Example:
        generator = JourneyGenerator(seed=7)
        journeys = generator.generate(page_ids=[1, 2, 3], day=date(2024, 3, 1), n=50)
    """

    def __init__(self, seed: int = 42):
        self.fake = Faker()
        self.fake.seed_instance(seed)
        self.random = random.Random(seed)

    def _referrer(self) -> Optional[str]:
        sources, weights = zip(*REFERRER_SOURCES)
        base = self.random.choices(sources, weights=weights)[0]
        if base is None:
            return None
        return f"{base}?q={self.fake.word()}"

    def _actions(self, action_type_ids: Sequence[int]) -> List[Dict]:
        if not action_type_ids or self.random.random() > 0.4:
            return []
        return [
            {
                "action_type_id": self.random.choice(action_type_ids),
                "meta_data": {"target": self.random.choice(ACTION_TARGETS)},
            }
            for _ in range(self.random.randint(1, 3))
        ]

    def generate(
        self,
        page_ids: Sequence[int],
        day: DateLike,
        n: int = 100,
        action_type_ids: Sequence[int] = (),
        anonymous_share: float = 0.2,
    ) -> List[Journey]:
        """Generate ``n`` journeys that all start on ``day``"""
        if not page_ids:
            raise ValueError("At least one page is required")

        start_of_day = day_floor(day)
        journeys = []
        for _ in range(n):
            at = start_of_day + timedelta(seconds=self.random.randint(0, 86400 - 3600))
            visits = []
            for _ in range(self.random.randint(1, 6)):
                visits.append(PlannedVisit(
                    page_id=self.random.choice(page_ids),
                    at=at,
                    actions=self._actions(action_type_ids),
                ))
                at += timedelta(seconds=self.random.randint(10, 600))

            anonymous = self.random.random() < anonymous_share
            journeys.append(Journey(
                user_id=None if anonymous else self.fake.unique.random_int(min=1, max=10_000_000),
                user_agent=self.fake.user_agent(),
                ip_address=self.fake.ipv4_public(),
                referrer_url=self._referrer(),
                visits=visits,
            ))
        return journeys


class _Clock:
    """Settable clock handed to the resolver while replaying journeys"""

    def __init__(self, current: datetime):
        self.current = current

    def __call__(self) -> datetime:
        return self.current


async def _page_urls(session: AsyncSession, client_id: int) -> List[Tuple[int, str]]:
    result = await session.execute(
        select(Page.id, Domain.host, Domain.protocol, Page.path)
        .join(Domain, Domain.id == Page.domain_id)
        .where(Page.client_id == client_id)
        .order_by(Page.id)
    )
    return [
        (page_id, f"{protocol or 'https'}://{host}{path}")
        for page_id, host, protocol, path in result.all()
    ]


async def seed_journeys(
    session: AsyncSession,
    client_id: int,
    day: DateLike,
    n: int = 50,
    seed: int = 42,
    geo_resolver: Optional[GeoResolver] = None,
) -> int:
    """
    Record ``n`` generated journeys for ``client_id`` on ``day``.

    Each visit after the first is referred by the previous page, so it is
    chained onto the journey through internal attribution.

    Returns:
        Number of page views recorded
    """
    pages = await _page_urls(session, client_id)
    urls = dict(pages)
    result = await session.execute(select(ActionType.id).order_by(ActionType.id))
    action_type_ids = list(result.scalars().all())

    generator = JourneyGenerator(seed=seed)
    journeys = generator.generate([page_id for page_id, _ in pages], day, n, action_type_ids)

    clock = _Clock(day_floor(day))
    resolver = AttributionResolver(session, geo_resolver=geo_resolver, now=clock)

    recorded = 0
    for journey in journeys:
        referrer_url = journey.referrer_url
        for visit in journey.visits:
            clock.current = visit.at
            edge = await resolver.record_page_view(
                client_id,
                visit.page_id,
                user_id=journey.user_id,
                referrer_url=referrer_url,
                ip_address=journey.ip_address,
                user_agent=journey.user_agent,
            )
            if visit.actions:
                await resolver.record_actions(edge.id, visit.actions)
            referrer_url = urls[visit.page_id]
            recorded += 1

    logger.info("Seeded synthetic journeys", client_id=client_id, journeys=len(journeys), page_views=recorded)
    return recorded
