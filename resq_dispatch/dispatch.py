"""
Dispatch workflow: preview routes, commit dispatches, find nearby units.

Preview and nearby-unit search are advisory and fail soft. Commit is a user
action expecting a definite outcome, so its failures are raised as
:class:`DispatchCommitError`.
"""

import logging
from collections.abc import Mapping, Sequence
from typing import Any

from pydantic import ValidationError

from .backend import ANONYMOUS_DISPATCHER_ID, Backend, OperationError
from .geo import calculate_distance_km, estimate_eta_minutes, is_finite_number
from .models import DispatchRoute, NearbyUnit
from .normalizer import map_dispatch_row

logger = logging.getLogger(__name__)

PREVIEW_ID_PREFIX = "preview-"


class DispatchCommitError(OperationError):
    """The create-dispatch transaction (or the follow-up fetch) failed."""

    operation = "commit dispatch"


class DispatchStateError(Exception):
    """A dispatch operation was requested while another one is in flight."""

    pass


def preview_route_id(unit_id: str) -> str:
    """Synthesized identifier of a preview route."""
    return f"{PREVIEW_ID_PREFIX}{unit_id}"


def _route_eta(payload: Mapping[str, Any], waypoints: list[tuple[float, float]]) -> int | None:
    eta = payload.get("eta")
    if is_finite_number(eta) and eta >= 0:
        return int(eta)

    distance = payload.get("distance")
    if is_finite_number(distance) and distance >= 0:
        return estimate_eta_minutes(distance)

    if len(waypoints) >= 2:
        (lat1, lng1), (lat2, lng2) = waypoints[0], waypoints[-1]
        return estimate_eta_minutes(calculate_distance_km(lat1, lng1, lat2, lng2))
    return None


def _preview_items(data: Any) -> list[Mapping[str, Any]]:
    if isinstance(data, Mapping):
        data = data.get("routes")
    if not isinstance(data, list):
        return []
    return [item for item in data if isinstance(item, Mapping)]


def _dispatch_ids(data: Any) -> list[str]:
    """Created dispatch IDs from either ``dispatch_ids`` or ``dispatches[*].dispatchId``."""
    if not isinstance(data, Mapping):
        return []
    if isinstance(data.get("dispatch_ids"), list):
        return [str(i) for i in data["dispatch_ids"] if i is not None]
    dispatches = data.get("dispatches")
    if isinstance(dispatches, list):
        return [
            str(d.get("dispatchId") or d.get("dispatch_id"))
            for d in dispatches
            if isinstance(d, Mapping) and (d.get("dispatchId") or d.get("dispatch_id"))
        ]
    return []


class DispatchService:
    """Runs dispatch operations against the backend RPC surface."""

    def __init__(self, backend: Backend, nearby_radius_km: float = 50.0):
        self.backend = backend
        self.nearby_radius_km = nearby_radius_km

    async def preview_dispatch(
        self, incident_id: str, unit_ids: Sequence[str]
    ) -> list[DispatchRoute]:
        """Compute non-persisted routes from each unit to the incident.

        Args:
            incident_id: Incident to dispatch to
            unit_ids: Candidate units

        Returns:
            One preview route per unit the backend could route. Empty on any
            failure; this method never raises.
        """
        if not unit_ids:
            logger.debug(f"No units selected for preview of incident {incident_id}")
            return []

        try:
            result = await self.backend.rpc(
                "preview_routes",
                {"p_incident_id": incident_id, "p_unit_ids": list(unit_ids)},
            )
            if not result.ok:
                logger.error(f"Error previewing dispatch for {incident_id}: {result.error}")
                return []

            routes: list[DispatchRoute] = []
            for item in _preview_items(result.data):
                unit_id = item.get("unit_id") or item.get("unitId")
                if unit_id is None:
                    logger.warning(f"Preview route without unit ID for incident {incident_id}")
                    continue
                waypoints = [tuple(point) for point in item.get("route") or []]
                try:
                    routes.append(
                        DispatchRoute(
                            id=preview_route_id(str(unit_id)),
                            incident_id=incident_id,
                            unit_id=str(unit_id),
                            coordinates=waypoints,
                            eta=_route_eta(item, waypoints),
                            is_preview=True,
                        )
                    )
                except (ValidationError, ValueError, TypeError) as e:
                    logger.warning(f"Skipping preview route for unit {unit_id}: {e}")

            logger.info(f"Previewed {len(routes)} routes for incident {incident_id}")
            return routes

        except Exception as e:
            logger.error(f"Error previewing dispatch for {incident_id}: {e}")
            return []

    async def resolve_dispatcher_id(self) -> str:
        """Signed-in user ID, or the anonymous dispatcher sentinel."""
        try:
            user_id = await self.backend.current_user_id()
        except Exception as e:
            logger.warning(f"Could not resolve dispatcher identity: {e}")
            user_id = None
        return user_id or ANONYMOUS_DISPATCHER_ID

    async def commit_dispatch(
        self, incident_id: str, unit_ids: Sequence[str]
    ) -> list[DispatchRoute]:
        """Create dispatch records for the units in one backend transaction.

        The backend flips each unit to ``dispatched`` and the incident to
        ``responding`` in the same transaction. The persisted rows are then
        fetched to pick up the server-computed route and ETA.

        Raises:
            DispatchCommitError: When the RPC or the follow-up fetch fails
        """
        dispatcher_id = await self.resolve_dispatcher_id()

        result = await self.backend.rpc(
            "create_dispatch",
            {
                "p_incident_id": incident_id,
                "p_unit_ids": list(unit_ids),
                "p_dispatcher_id": dispatcher_id,
            },
        )
        if not result.ok:
            logger.error(f"Error committing dispatch for {incident_id}: {result.error}")
            raise DispatchCommitError(result.error.message, result.error)

        dispatch_ids = _dispatch_ids(result.data)
        if not dispatch_ids:
            logger.warning(f"Dispatch for {incident_id} created no dispatch records")
            return []

        rows = await self.backend.select("dispatches", in_filter=("id", dispatch_ids))
        if not rows.ok:
            logger.error(f"Error fetching dispatch details for {incident_id}: {rows.error}")
            raise DispatchCommitError(
                f"could not fetch dispatch details: {rows.error.message}", rows.error
            )

        routes = [map_dispatch_row(row) for row in rows.data or []]
        logger.info(
            f"Committed {len(routes)} dispatches for incident {incident_id}",
            extra={"incident_id": incident_id, "dispatcher_id": dispatcher_id},
        )
        return routes

    async def find_nearby_units(
        self,
        lat: float,
        lng: float,
        unit_type: str | None = None,
        radius_km: float | None = None,
    ) -> list[NearbyUnit]:
        """Available units near a position, closest first. Empty on failure."""
        radius = radius_km if radius_km is not None else self.nearby_radius_km
        try:
            result = await self.backend.rpc(
                "get_nearby_units",
                {"p_lat": lat, "p_lng": lng, "p_type": unit_type, "p_radius_km": radius},
            )
            if not result.ok:
                logger.error(f"Error getting nearby units: {result.error}")
                return []

            units: list[NearbyUnit] = []
            for row in result.data or []:
                distance = row.get("distance_km", row.get("distance"))
                if not is_finite_number(distance):
                    logger.warning(f"Skipping nearby unit without distance: {row}")
                    continue
                units.append(
                    NearbyUnit(
                        id=str(row.get("unit_id") or row.get("id")),
                        label=row.get("label") or row.get("name") or "",
                        type=row.get("unit_type") or row.get("type") or "",
                        distance_km=distance,
                        eta_minutes=estimate_eta_minutes(distance),
                    )
                )
            return sorted(units, key=lambda u: u.distance_km)

        except Exception as e:
            logger.error(f"Error getting nearby units: {e}")
            return []
