"""
Engine and session management.

The stats batch opens one session per client and day from a shared
``async_sessionmaker``; ingestion code uses ``get_db()`` as a unit of work.
PostgreSQL (asyncpg) is the production backend. SQLite (aiosqlite) works
for local runs and tests.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import structlog
from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool, StaticPool

from pathstats.config import get_settings
from pathstats.database.models import Base

logger = structlog.get_logger(__name__)

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def build_engine(url: Optional[str] = None, echo: Optional[bool] = None) -> AsyncEngine:
    """
    Create an engine for ``url`` (default: the configured database).

    An in-memory SQLite database lives on a single shared connection;
    everything else connects per checkout.
    """
    settings = get_settings().database
    url = url or settings.async_url
    echo = settings.echo if echo is None else echo

    parsed = make_url(url)
    if parsed.get_backend_name() == "sqlite" and parsed.database in (None, "", ":memory:"):
        return create_async_engine(
            url,
            echo=echo,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
    return create_async_engine(url, echo=echo, pool_pre_ping=True, poolclass=NullPool)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def create_schema(engine: AsyncEngine) -> None:
    """Create every table that does not exist yet"""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Schema ensured", tables=len(Base.metadata.tables))


async def init_database(url: Optional[str] = None, create_tables: bool = False) -> AsyncEngine:
    """
    Open the process-wide engine and check connectivity.

    Args:
        url: Override the configured database URL
        create_tables: Create missing tables after connecting
    """
    global _engine, _session_factory

    if _engine is not None:
        logger.warning("Database already initialized")
        return _engine

    engine = build_engine(url)
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        logger.error("Database unreachable", url=engine.url.render_as_string(hide_password=True), error=str(e))
        await engine.dispose()
        raise

    if create_tables:
        await create_schema(engine)

    _engine = engine
    _session_factory = create_session_factory(engine)
    logger.info("Database connection established", url=engine.url.render_as_string(hide_password=True))
    return engine


async def close_database() -> None:
    global _engine, _session_factory

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None
        logger.info("Database engine disposed")


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """
    Session factory of the initialized engine.

    Raises:
        RuntimeError: init_database() has not been called
    """
    if _session_factory is None:
        raise RuntimeError("Database not initialized. Call init_database() first.")
    return _session_factory


@asynccontextmanager
async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Unit of work: commits on success, rolls back and re-raises on error.

    Example:
        async with get_db() as db:
            await AttributionResolver(db).record_page_view(client_id, page_id, ...)
    """
    async with get_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception as e:
            logger.error("Unit of work failed, rolling back", error=str(e), error_type=type(e).__name__)
            await session.rollback()
            raise
