"""
Test Suite Configuration
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import AsyncGenerator, Dict, List, Optional, Set

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from pathstats.database.connection import build_engine, create_schema, create_session_factory
from pathstats.database.models import ActionType, Client, Domain, Page, Tag
from pathstats.errors import GeoLookupFailed
from pathstats.tracking.geolocation import GeoLocation

FIXED_NOW = datetime(2024, 3, 1, 12, 0, 0)
DAY = datetime(2024, 3, 1)

CHROME_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


class FixedClock:
    """Controllable clock for the attribution window"""

    def __init__(self, now: datetime):
        self.current = now

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


class FakeGeoResolver:
    """Geolocation resolver answering from a dict"""

    def __init__(self, locations: Optional[Dict[str, GeoLocation]] = None, failing: Set[str] = frozenset()):
        self.locations = locations or {}
        self.failing = set(failing)
        self.calls: List[str] = []

    async def resolve(self, ipv4: str) -> GeoLocation:
        self.calls.append(ipv4)
        if ipv4 in self.failing:
            raise GeoLookupFailed(ipv4, "service unavailable")
        return self.locations.get(ipv4, GeoLocation())


@dataclass
class Site:
    """A client with one domain, three pages, two action types and a tag"""
    client: Client
    domain: Domain
    home: Page
    pricing: Page
    signup: Page
    pages: List[Page] = field(default_factory=list)
    click: Optional[ActionType] = None
    submit: Optional[ActionType] = None
    tag: Optional[Tag] = None


@pytest.fixture
async def test_engine():
    """In-memory database shared by every session of one test"""
    engine = build_engine("sqlite+aiosqlite:///:memory:", echo=False)
    await create_schema(engine)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return create_session_factory(test_engine)


@pytest.fixture
async def test_db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create test database session"""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(FIXED_NOW)


@pytest.fixture
def geo_resolver() -> FakeGeoResolver:
    return FakeGeoResolver({
        "81.2.69.160": GeoLocation(
            latitude=51.5142,
            longitude=-0.0931,
            city="London",
            state="England",
            country="United Kingdom",
            country_code="GB",
            postal="EC2V",
        ),
        "8.8.8.8": GeoLocation(
            latitude=37.751,
            longitude=-97.822,
            country="United States",
            country_code="US",
        ),
    })


async def make_site(session: AsyncSession, name: str = "Acme", host: str = "acme.test") -> Site:
    client = Client(name=name)
    session.add(client)
    await session.flush()

    domain = Domain(client_id=client.id, host=host, protocol="https")
    session.add(domain)
    await session.flush()

    pages = [
        Page(client_id=client.id, domain_id=domain.id, path=path, name=label)
        for path, label in [("/", "Home"), ("/pricing", "Pricing"), ("/signup", "Sign up")]
    ]
    session.add_all(pages)
    await session.flush()
    return Site(
        client=client,
        domain=domain,
        home=pages[0],
        pricing=pages[1],
        signup=pages[2],
        pages=pages,
    )


@pytest.fixture
async def site(test_db) -> Site:
    """Committed client, domain, pages, action types and tag"""
    site = await make_site(test_db)

    click = ActionType(name="click")
    submit = ActionType(name="submit")
    tag = Tag(name="campaign")
    test_db.add_all([click, submit, tag])
    await test_db.flush()

    site.click = click
    site.submit = submit
    site.tag = tag
    await test_db.commit()
    return site
