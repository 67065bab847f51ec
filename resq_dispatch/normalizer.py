"""
Mapping of raw backend rows into domain models.

Every mapper returns a fresh model and never mutates the row it was given.
Incident and unit mappers return ``None`` for rows that cannot be placed on a
map; callers filter those out with :func:`map_rows`.
"""

import logging
from collections.abc import Callable, Iterable, Mapping
from datetime import datetime
from typing import Any, TypeVar

import pytz
from pydantic import ValidationError

from .geo import extract_coordinates, is_finite_lat_lng
from .models import (
    DispatchRoute,
    EmergencyUnit,
    Incident,
    IncidentType,
    UnitStatus,
)

logger = logging.getLogger(__name__)

UTC_TZ = pytz.UTC

T = TypeVar("T")


def parse_timestamp(value: Any) -> datetime | None:
    """
    Parse a timestamp column into an aware UTC datetime.

    Accepts ISO 8601 strings (with or without a trailing ``Z``) and datetimes.
    Naive values are assumed to be UTC.
    """
    if value is None or value == "":
        return None

    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError as e:
            logger.warning(f"Failed to parse timestamp '{value}': {e}")
            return None

    if parsed.tzinfo is None:
        return UTC_TZ.localize(parsed)
    return parsed.astimezone(UTC_TZ)


def normalize_unit_status(row: Mapping[str, Any]) -> UnitStatus:
    """
    Collapse the two historical unit status columns into one status.

    The enumerated ``status`` column is authoritative when present; older
    rows only carry the boolean ``is_available`` flag.
    """
    status = row.get("status")
    if status:
        return UnitStatus(str(status).strip().lower())
    if row.get("is_available") is True:
        return UnitStatus.AVAILABLE
    return UnitStatus.DISPATCHED


def _incident_type(value: Any) -> IncidentType:
    try:
        return IncidentType(str(value).strip().lower())
    except ValueError:
        logger.debug(f"Unknown incident type '{value}', using 'other'")
        return IncidentType.OTHER


def map_incident_row(row: Mapping[str, Any]) -> Incident | None:
    """
    Map an ``incidents`` row to an Incident.

    Returns None (after logging a warning with the incident ID) when the row
    has no usable coordinates or fails validation.
    """
    coords = extract_coordinates(row)
    if coords is None:
        logger.warning(f"Skipping incident {row.get('id')} - invalid coordinates")
        return None

    try:
        reported_at = (
            parse_timestamp(row.get("reported_at"))
            or parse_timestamp(row.get("created_at"))
            or datetime.now(UTC_TZ)
        )
        return Incident(
            id=str(row.get("id") or ""),
            type=_incident_type(row.get("type")),
            status=row.get("status") or "pending",
            severity=row.get("severity") or "medium",
            description=row.get("description") or "",
            location={
                "lat": coords.lat,
                "lng": coords.lng,
                "address": row.get("address") or f"{coords.lat:.4f}, {coords.lng:.4f}",
            },
            reported_by=row.get("reported_by_name") or "Anonymous",
            reporter_id=row.get("reported_by") or None,
            reported_at=reported_at,
            is_verified=bool(row.get("is_verified") or False),
            verification_count=row.get("verification_count") or 0,
            assigned_units=list(row.get("assigned_unit_ids") or []),
            image_url=row.get("image_url") or None,
        )
    except (ValidationError, ValueError, TypeError) as e:
        logger.warning(f"Skipping incident {row.get('id')} - invalid row: {e}")
        return None


def map_unit_row(row: Mapping[str, Any]) -> EmergencyUnit | None:
    """
    Map a ``units`` row to an EmergencyUnit.

    Handles both the current schema (``name``, ``status``) and the legacy one
    (``label``, ``is_available``).
    """
    coords = extract_coordinates(row)
    if coords is None:
        logger.warning(f"Skipping unit {row.get('id')} - invalid coordinates")
        return None

    unit_id = row.get("id")
    try:
        return EmergencyUnit(
            id=str(unit_id if unit_id is not None else ""),
            name=row.get("name") or row.get("label") or f"Unit {unit_id}",
            type=row.get("type"),
            status=normalize_unit_status(row),
            location={"lat": coords.lat, "lng": coords.lng},
        )
    except (ValidationError, ValueError, TypeError) as e:
        logger.warning(f"Skipping unit {unit_id} - invalid row: {e}")
        return None


def parse_route_geometry(route_geojson: Any) -> list[tuple[float, float]]:
    """
    Turn a stored route geometry into ``(lat, lng)`` waypoints.

    Supported shapes:
    - GeoJSON LineString ``{"type": "LineString", "coordinates": [[lng, lat], ...]}``
    - an untyped ``{"coordinates": [[lng, lat], ...]}``
    - a bare list of ``[lat, lng]`` pairs (already in waypoint order)

    GeoJSON positions are ``[lng, lat]`` and are swapped here. Anything that
    is not a usable line yields an empty list.
    """
    if isinstance(route_geojson, Mapping):
        positions = route_geojson.get("coordinates")
        swap = True
    elif isinstance(route_geojson, list):
        positions = route_geojson
        swap = False
    else:
        return []

    if not isinstance(positions, list):
        return []

    waypoints: list[tuple[float, float]] = []
    for position in positions:
        if not isinstance(position, (list, tuple)) or len(position) < 2:
            continue
        lat, lng = (position[1], position[0]) if swap else (position[0], position[1])
        if is_finite_lat_lng(lat, lng):
            waypoints.append((float(lat), float(lng)))

    dropped = len(positions) - len(waypoints)
    if dropped:
        logger.warning(f"Dropped {dropped} invalid route waypoints")

    if len(waypoints) < 2:
        return []
    return waypoints


def map_dispatch_row(row: Mapping[str, Any]) -> DispatchRoute:
    """Map a ``dispatches`` row to a confirmed DispatchRoute."""
    coordinates = parse_route_geometry(row.get("route_geojson"))
    eta = row.get("eta_minutes")

    route = DispatchRoute(
        id=str(row["id"]) if row.get("id") is not None else None,
        incident_id=str(row.get("incident_id") or ""),
        unit_id=str(row.get("unit_id") or ""),
        coordinates=coordinates,
        eta=eta if isinstance(eta, int) and not isinstance(eta, bool) and eta >= 0 else None,
    )

    logger.debug(
        "Mapped dispatch route",
        extra={
            "dispatch_id": route.id,
            "incident_id": route.incident_id,
            "unit_id": route.unit_id,
            "waypoint_count": len(coordinates),
        },
    )
    return route


def map_rows(
    rows: Iterable[Mapping[str, Any]] | None,
    mapper: Callable[[Mapping[str, Any]], T | None],
    kind: str = "rows",
) -> list[T]:
    """Map rows and filter out the ones the mapper rejected."""
    mapped: list[T] = []
    total = 0
    for row in rows or []:
        total += 1
        item = mapper(row)
        if item is not None:
            mapped.append(item)

    if len(mapped) < total:
        logger.warning(f"Discarded {total - len(mapped)} of {total} {kind}")

    logger.info(f"Mapped {len(mapped)} {kind}")
    return mapped
