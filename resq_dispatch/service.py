"""
Read path for incidents, units and dispatch routes.

``fetch_*`` methods raise :class:`FetchError` when the backend reports an
error, so the store can decide what to do with its cached collection.
"""

import logging

from .backend import Backend, BackendError
from .models import DispatchRoute, EmergencyUnit, Incident
from .normalizer import map_dispatch_row, map_incident_row, map_rows, map_unit_row

logger = logging.getLogger(__name__)

ACTIVE_DISPATCH_STATUSES = ("dispatched", "en_route")


class FetchError(Exception):
    """Raised when the backend fails to return rows."""

    def __init__(self, kind: str, error: BackendError | None):
        self.kind = kind
        self.error = error
        super().__init__(f"Failed to fetch {kind}: {error}")


class IncidentService:
    """Loads and maps rows from the backend."""

    def __init__(self, backend: Backend):
        self.backend = backend

    async def fetch_incidents(self) -> list[Incident]:
        """Fetch all incidents, newest first."""
        result = await self.backend.select(
            "incidents", order_by="created_at", ascending=False
        )
        if not result.ok:
            raise FetchError("incidents", result.error)
        logger.debug(f"Fetched {len(result.data or [])} incident rows")
        return map_rows(result.data, map_incident_row, "incidents")

    async def fetch_units(self) -> list[EmergencyUnit]:
        """Fetch all emergency units ordered by ID."""
        result = await self.backend.select("units", order_by="id", ascending=True)
        if not result.ok:
            raise FetchError("units", result.error)
        logger.debug(f"Fetched {len(result.data or [])} unit rows")
        return map_rows(result.data, map_unit_row, "units")

    async def fetch_dispatch_routes(self) -> list[DispatchRoute]:
        """Fetch confirmed routes of dispatches still under way."""
        result = await self.backend.select(
            "dispatches",
            order_by="dispatched_at",
            ascending=False,
            in_filter=("status", ACTIVE_DISPATCH_STATUSES),
        )
        if not result.ok:
            raise FetchError("dispatch routes", result.error)
        return [map_dispatch_row(row) for row in result.data or []]

