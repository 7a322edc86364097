"""
IP Geolocation

Resolves IPv4 addresses through an HTTP geolocation service and caches the
result as an IpLocation row. Lookups never fail the caller: an address that
cannot be resolved simply has no location.
"""

from dataclasses import asdict, dataclass
from ipaddress import IPv4Address, AddressValueError
from typing import Any, Optional

import httpx
import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from pathstats.config import get_settings
from pathstats.database.models import IpLocation
from pathstats.database.repository import Repository
from pathstats.errors import GeoLookupFailed

logger = structlog.get_logger(__name__)


@dataclass
class GeoLocation:
    """Location reported for one address"""
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    city: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None
    country_code: Optional[str] = None
    postal: Optional[str] = None


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    if not value or value.lower() == "not found":
        return None
    return value


def _coordinate(value: Any) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class GeoResolver:
    """
    Client for a geolocation-db style JSON API (``GET {api_url}/{ipv4}``).

    Example:
        resolver = GeoResolver()
        location = await resolver.resolve("8.8.8.8")
    """

    def __init__(
        self,
        api_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = get_settings().geolocation
        self.api_url = (api_url or settings.api_url).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.timeout_seconds
        self.transport = transport

    async def resolve(self, ipv4: str) -> GeoLocation:
        """
        Look up ``ipv4``.

        Raises:
            GeoLookupFailed: Transport error, bad status or unusable payload
        """
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.get(f"{self.api_url}/{ipv4}")
                response.raise_for_status()
                payload = response.json()
        except httpx.TimeoutException as e:
            raise GeoLookupFailed(ipv4, f"timed out after {self.timeout}s") from e
        except httpx.HTTPError as e:
            raise GeoLookupFailed(ipv4, str(e)) from e
        except ValueError as e:
            raise GeoLookupFailed(ipv4, f"invalid JSON: {e}") from e

        if not isinstance(payload, dict):
            raise GeoLookupFailed(ipv4, "unexpected payload")

        return GeoLocation(
            latitude=_coordinate(payload.get("latitude")),
            longitude=_coordinate(payload.get("longitude")),
            city=_text(payload.get("city")),
            state=_text(payload.get("state")),
            country=_text(payload.get("country_name")),
            country_code=_text(payload.get("country_code")),
            postal=_text(payload.get("postal")),
        )


async def get_or_create_ip_location(
    session: AsyncSession,
    ip_address: Optional[str],
    resolver: Optional[GeoResolver],
) -> Optional[IpLocation]:
    """
    Cached IpLocation for ``ip_address``, resolving unseen addresses.

    Returns None when the address is missing or invalid, when lookups are
    disabled, or when the lookup fails.
    """
    if not ip_address:
        return None
    try:
        ipv4 = str(IPv4Address(ip_address.strip()))
    except AddressValueError:
        logger.warning("Ignoring invalid IPv4 address", ip_address=ip_address)
        return None

    repo = Repository(session)
    existing = await repo.select_one_where(IpLocation, IpLocation.ipv4 == ipv4)
    if existing is not None:
        return existing

    if resolver is None or not get_settings().geolocation.enabled:
        return None

    try:
        location = await resolver.resolve(ipv4)
    except GeoLookupFailed as e:
        logger.warning("Geolocation lookup failed", ipv4=ipv4, error=str(e))
        return None

    record = await repo.insert(IpLocation, ipv4=ipv4, **asdict(location))
    logger.debug("IP location cached", ipv4=ipv4, ip_location_id=record.id, country=location.country_code)
    return record
