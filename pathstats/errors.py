"""
Error taxonomy for the path graph and the aggregation pipeline.

Only ``NotFound`` is meant to reach ingestion callers. The rest are raised
and recovered inside the engine, or wrapped at the per-client boundary of
the daily run.
"""

from datetime import datetime
from typing import Any, Optional


class PathStatsError(Exception):
    """Base class for engine errors"""


class NotFound(PathStatsError):
    """A referenced row does not exist"""

    def __init__(self, entity: str, entity_id: Any):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id!r} does not exist")


class AttributionAmbiguous(PathStatsError):
    """Referrer or page resolution could not decide on a parent chain"""


class GeoLookupFailed(PathStatsError):
    """The geolocation service could not resolve an address"""

    def __init__(self, ipv4: str, reason: str):
        self.ipv4 = ipv4
        self.reason = reason
        super().__init__(f"Geolocation lookup failed for {ipv4}: {reason}")


class AggregateConflict(PathStatsError):
    """An aggregate sub-row already exists for the same (scope, key)"""

    def __init__(self, table: str, existing: Any):
        self.table = table
        self.existing = existing
        super().__init__(f"{table} row {getattr(existing, 'id', None)} already exists")


class PerClientPipelineFailure(PathStatsError):
    """One client's daily pipeline failed"""

    def __init__(self, client_id: int, day: datetime, cause: Optional[BaseException] = None):
        self.client_id = client_id
        self.day = day
        self.cause = cause
        super().__init__(f"Stats pipeline failed for client {client_id} on {day.date()}: {cause}")


class OrchestratorBusy(PathStatsError):
    """A run was requested while another is in progress"""
