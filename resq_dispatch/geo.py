"""
Coordinate extraction and geographic helpers.

Rows coming back from the geospatial backend carry their position in several
shapes depending on which query or RPC produced them. ``extract_coordinates``
tries each known shape in a fixed order and only ever returns a pair of finite
numbers, or ``None``.
"""

import json
import logging
import math
import re
from collections.abc import Callable, Mapping, Sequence
from typing import Any

from .models import Coordinates

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0

_NUMBER = r"[-+]?(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?"
WKT_POINT_RE = re.compile(rf"POINT\s*\(\s*({_NUMBER})\s+({_NUMBER})\s*\)", re.IGNORECASE)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def is_finite_number(value: Any) -> bool:
    return _is_number(value) and math.isfinite(value)


def is_finite_lat_lng(lat: Any, lng: Any) -> bool:
    """Check that both values are real numbers and finite.

    Strings, ``None``, booleans, ``NaN`` and infinities are all rejected.
    """
    return is_finite_number(lat) and is_finite_number(lng)


def _pair(lat: Any, lng: Any) -> Coordinates | None:
    if is_finite_lat_lng(lat, lng):
        return Coordinates(lat=lat, lng=lng)
    return None


def _geojson_pair(value: Any) -> Coordinates | None:
    if not isinstance(value, Mapping):
        return None
    coords = value.get("coordinates")
    if isinstance(coords, (list, tuple)) and len(coords) >= 2:
        lng, lat = coords[0], coords[1]
        return _pair(lat, lng)
    return None


def from_direct_fields(row: Mapping[str, Any]) -> Coordinates | None:
    """``{"lat": .., "lng": ..}`` on the row itself."""
    return _pair(row.get("lat"), row.get("lng"))


def from_geojson_location(row: Mapping[str, Any]) -> Coordinates | None:
    """``{"location": {"coordinates": [lng, lat, ...]}}``."""
    return _geojson_pair(row.get("location"))


def from_nested_lat_lng(row: Mapping[str, Any]) -> Coordinates | None:
    """``{"location": {"lat": .., "lng": ..}}``."""
    loc = row.get("location")
    if isinstance(loc, Mapping):
        return _pair(loc.get("lat"), loc.get("lng"))
    return None


def from_planar_point(row: Mapping[str, Any]) -> Coordinates | None:
    """``{"location": {"x": lng, "y": lat}}``."""
    loc = row.get("location")
    if isinstance(loc, Mapping):
        return _pair(loc.get("y"), loc.get("x"))
    return None


def from_wkt_location(row: Mapping[str, Any]) -> Coordinates | None:
    """``{"location": "POINT(lng lat)"}``."""
    loc = row.get("location")
    if not isinstance(loc, str):
        return None
    match = WKT_POINT_RE.search(loc)
    if not match:
        return None
    lng, lat = float(match.group(1)), float(match.group(2))
    return _pair(lat, lng)


def from_json_location(row: Mapping[str, Any]) -> Coordinates | None:
    """``{"location": '{"type": "Point", "coordinates": [lng, lat]}'}``."""
    loc = row.get("location")
    if not isinstance(loc, str) or not loc.lstrip().startswith("{"):
        return None
    try:
        parsed = json.loads(loc)
    except ValueError:
        return None
    return _geojson_pair(parsed)


ExtractionStrategy = Callable[[Mapping[str, Any]], Coordinates | None]

# Priority order matters: the first strategy that yields a finite pair wins
EXTRACTION_STRATEGIES: tuple[tuple[str, ExtractionStrategy], ...] = (
    ("direct", from_direct_fields),
    ("geojson", from_geojson_location),
    ("nested", from_nested_lat_lng),
    ("planar", from_planar_point),
    ("wkt", from_wkt_location),
    ("json", from_json_location),
)


def extract_coordinates(
    row: Any,
    strategies: Sequence[tuple[str, ExtractionStrategy]] = EXTRACTION_STRATEGIES,
) -> Coordinates | None:
    """Extract a finite ``(lat, lng)`` pair from a backend row.

    Args:
        row: Raw backend row (any shape)
        strategies: Ordered extraction strategies to try

    Returns:
        The first pair any strategy produced, or None when all of them fail.
        Never raises; a failure is logged once with the offending row.
    """
    if isinstance(row, Mapping):
        for name, strategy in strategies:
            try:
                coords = strategy(row)
            except Exception as e:
                logger.debug(f"Coordinate strategy '{name}' errored: {e}")
                continue
            if coords is not None:
                return coords

    logger.warning(
        "Could not extract coordinates from row",
        extra={
            "row": row,
            "location": row.get("location") if isinstance(row, Mapping) else None,
        },
    )
    return None


def point_wkt(lat: float, lng: float) -> str:
    """Encode a position as a WKT point (``POINT(lng lat)``)."""
    return f"POINT({lng!r} {lat!r})"


def calculate_distance_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great circle distance between two positions using the haversine formula."""
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)

    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lng / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def estimate_eta_minutes(distance_km: float) -> int:
    """Placeholder ETA until real routing times are available: two minutes per km."""
    return math.ceil(distance_km * 2)


def interpolate_route(
    start: tuple[float, float], end: tuple[float, float], steps: int = 10
) -> list[tuple[float, float]]:
    """Straight line between two ``(lat, lng)`` points as ``steps + 1`` waypoints."""
    if steps < 1:
        raise ValueError("Route needs at least one step")
    (lat1, lng1), (lat2, lng2) = start, end
    return [
        (lat1 + (lat2 - lat1) * i / steps, lng1 + (lng2 - lng1) * i / steps)
        for i in range(steps + 1)
    ]
