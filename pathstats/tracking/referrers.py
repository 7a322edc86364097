"""
Referrer URL handling.

Referrers are deduplicated by their normalized href.
"""

from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlsplit, urlunsplit

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from pathstats.database.models import Referrer
from pathstats.database.repository import Repository
from pathstats.errors import AttributionAmbiguous

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ParsedUrl:
    href: str
    host: str
    hostname: str
    path: str


def lift_url(url: Optional[str]) -> ParsedUrl:
    """
    Parse and normalize an absolute URL.

    Raises:
        AttributionAmbiguous: The URL is empty or not absolute
    """
    if not url or not url.strip():
        raise AttributionAmbiguous("Empty referrer URL")
    try:
        parts = urlsplit(url.strip())
        hostname = parts.hostname
    except ValueError as e:
        raise AttributionAmbiguous(f"Malformed referrer URL {url!r}: {e}") from e
    if not parts.scheme or not hostname:
        raise AttributionAmbiguous(f"Referrer URL is not absolute: {url!r}")

    path = parts.path or "/"
    host = parts.netloc.lower().rsplit("@", 1)[-1]
    href = urlunsplit((parts.scheme.lower(), host, path, parts.query, ""))
    return ParsedUrl(href=href, host=host, hostname=hostname.lower(), path=path)


async def get_referrer_for_url(session: AsyncSession, url: Optional[str]) -> Optional[Referrer]:
    """Existing Referrer for ``url``, or None (also for malformed URLs)"""
    try:
        parsed = lift_url(url)
    except AttributionAmbiguous:
        return None
    return await Repository(session).select_one_where(Referrer, Referrer.href == parsed.href)


async def get_or_create_referrer(session: AsyncSession, url: str) -> Referrer:
    parsed = lift_url(url)
    referrer, created = await Repository(session).get_or_create(
        Referrer,
        {"href": parsed.href},
        {"host": parsed.host, "path": parsed.path},
    )
    if created:
        logger.info("Referrer registered", referrer_id=referrer.id, host=parsed.host)
    return referrer
