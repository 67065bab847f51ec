"""Tests for the entity mappers."""

import logging
import math
from datetime import UTC, datetime

import pytest

from resq_dispatch.models import IncidentStatus, IncidentType, UnitStatus, UnitType
from resq_dispatch.normalizer import (
    map_dispatch_row,
    map_incident_row,
    map_rows,
    map_unit_row,
    normalize_unit_status,
    parse_route_geometry,
    parse_timestamp,
)

from .conftest import incident_row, unit_row


class TestIncidentMapper:
    """Test cases for map_incident_row."""

    def test_map_valid_row(self):
        """A complete row maps every field."""
        row = incident_row(
            "INC-20250101-0001",
            reported_by="5b1c9f1e-0000-4000-8000-000000000001",
            assigned_unit_ids=["UNIT-1"],
            verification_count=2,
            is_verified=True,
        )

        incident = map_incident_row(row)

        assert incident.id == "INC-20250101-0001"
        assert incident.type == IncidentType.FIRE
        assert incident.status == IncidentStatus.PENDING
        assert incident.location.lat == 47.6062
        assert incident.location.lng == -122.3321
        assert incident.location.address == "400 Pine St, Seattle"
        assert incident.reported_by == "Jane Citizen"
        assert incident.reporter_id == "5b1c9f1e-0000-4000-8000-000000000001"
        assert incident.reported_at == datetime(2025, 1, 1, 8, 0, tzinfo=UTC)
        assert incident.assigned_units == ["UNIT-1"]
        assert incident.verification_count == 2
        assert incident.is_verified is True

    def test_row_is_not_mutated(self):
        row = incident_row("INC-1")
        snapshot = dict(row)

        map_incident_row(row)

        assert row == snapshot

    def test_defaults(self):
        """Missing optional columns fall back to defaults."""
        row = {"id": "INC-2", "type": "medical", "location": "POINT(-122.3 47.6)"}

        incident = map_incident_row(row)

        assert incident.status == IncidentStatus.PENDING
        assert incident.reported_by == "Anonymous"
        assert incident.location.address == "47.6000, -122.3000"
        assert incident.reported_at.tzinfo is not None

    def test_unknown_type_becomes_other(self):
        incident = map_incident_row(incident_row("INC-3", type="flood"))

        assert incident.type == IncidentType.OTHER

    def test_invalid_coordinates_dropped(self, caplog):
        """Rows without usable coordinates are dropped with the ID logged."""
        row = incident_row("INC-BAD", lat=math.nan)

        with caplog.at_level(logging.WARNING):
            assert map_incident_row(row) is None

        assert "INC-BAD" in caplog.text

    @pytest.mark.parametrize("lat,lng", [(91.0, 0.0), (-90.5, 0.0), (0.0, 180.5), (0.0, -181.0)])
    def test_out_of_range_coordinates_dropped(self, lat, lng):
        """Finite but out-of-range positions fail model validation."""
        assert map_incident_row(incident_row("INC-FAR", lat=lat, lng=lng)) is None

    def test_invalid_status_dropped(self):
        assert map_incident_row(incident_row("INC-4", status="exploded")) is None

    def test_legacy_status_accepted(self):
        incident = map_incident_row(incident_row("INC-5", status="in_progress"))

        assert incident.status == IncidentStatus.IN_PROGRESS


class TestUnitMapper:
    """Test cases for map_unit_row and unit status normalization."""

    def test_map_current_schema(self):
        unit = map_unit_row(unit_row("UNIT-1"))

        assert unit.id == "UNIT-1"
        assert unit.name == "Engine UNIT-1"
        assert unit.type == UnitType.FIRE_TRUCK
        assert unit.status == UnitStatus.AVAILABLE
        assert (unit.location.lat, unit.location.lng) == (47.61, -122.34)

    def test_map_legacy_schema(self):
        """Legacy rows carry ``label`` and ``is_available``."""
        row = {
            "id": 7,
            "label": "Medic 7",
            "type": "ambulance",
            "is_available": True,
            "location": {"x": -122.3, "y": 47.6},
        }

        unit = map_unit_row(row)

        assert unit.id == "7"
        assert unit.name == "Medic 7"
        assert unit.status == UnitStatus.AVAILABLE

    def test_name_fallback(self):
        row = unit_row("UNIT-9", name=None)

        assert map_unit_row(row).name == "Unit UNIT-9"

    @pytest.mark.parametrize(
        "row,expected",
        [
            ({"status": "busy", "is_available": True}, UnitStatus.BUSY),
            ({"status": "offline"}, UnitStatus.OFFLINE),
            ({"is_available": True}, UnitStatus.AVAILABLE),
            ({"is_available": False}, UnitStatus.DISPATCHED),
            ({"is_available": None}, UnitStatus.DISPATCHED),
            ({}, UnitStatus.DISPATCHED),
        ],
    )
    def test_status_normalization(self, row, expected):
        """The status column wins over the legacy boolean."""
        assert normalize_unit_status(row) == expected

    def test_unknown_unit_type_dropped(self):
        assert map_unit_row(unit_row("UNIT-X", type="submarine")) is None

    def test_invalid_coordinates_dropped(self):
        assert map_unit_row({"id": "UNIT-Y", "type": "ambulance", "location": None}) is None


class TestRouteGeometry:
    """Test cases for dispatch route parsing."""

    def test_linestring_is_swapped(self):
        """GeoJSON [lng, lat] positions become (lat, lng) waypoints."""
        geometry = {"type": "LineString", "coordinates": [[-122.34, 47.61], [-122.33, 47.60]]}

        assert parse_route_geometry(geometry) == [(47.61, -122.34), (47.60, -122.33)]

    def test_untyped_coordinates_are_swapped(self):
        geometry = {"coordinates": [[-122.34, 47.61], [-122.33, 47.60]]}

        assert parse_route_geometry(geometry) == [(47.61, -122.34), (47.60, -122.33)]

    def test_bare_list_is_not_swapped(self):
        assert parse_route_geometry([[47.61, -122.34], [47.60, -122.33]]) == [
            (47.61, -122.34),
            (47.60, -122.33),
        ]

    @pytest.mark.parametrize("geometry", [None, "LINESTRING(0 0, 1 1)", {}, {"coordinates": "x"}, 42])
    def test_malformed_geometry_is_empty(self, geometry):
        assert parse_route_geometry(geometry) == []

    def test_non_finite_waypoints_dropped(self):
        geometry = {"coordinates": [[0.0, 0.0], [math.nan, 1.0], [1.0, 1.0], [2.0, math.inf]]}

        assert parse_route_geometry(geometry) == [(0.0, 0.0), (1.0, 1.0)]

    def test_single_point_is_empty(self):
        """A route needs at least two usable waypoints."""
        assert parse_route_geometry({"coordinates": [[0.0, 0.0], [math.nan, 1.0]]}) == []


class TestDispatchMapper:
    """Test cases for map_dispatch_row."""

    def test_map_dispatch(self):
        row = {
            "id": "DSP-0001",
            "incident_id": "INC-1",
            "unit_id": "UNIT-1",
            "status": "dispatched",
            "route_geojson": {"type": "LineString", "coordinates": [[-122.34, 47.61], [-122.33, 47.60]]},
            "eta_minutes": 4,
        }

        route = map_dispatch_row(row)

        assert route.id == "DSP-0001"
        assert route.incident_id == "INC-1"
        assert route.unit_id == "UNIT-1"
        assert route.coordinates[0] == (47.61, -122.34)
        assert route.eta == 4
        assert route.is_preview is False

    def test_missing_geometry_and_eta(self):
        route = map_dispatch_row({"id": 5, "incident_id": "INC-1", "unit_id": 3})

        assert route.id == "5"
        assert route.unit_id == "3"
        assert route.coordinates == []
        assert route.eta is None

    @pytest.mark.parametrize("eta", [-1, 2.5, "7", True])
    def test_invalid_eta_ignored(self, eta):
        route = map_dispatch_row({"id": "D", "incident_id": "I", "unit_id": "U", "eta_minutes": eta})

        assert route.eta is None


class TestMapRows:
    """Mapper drop invariant."""

    def test_invalid_rows_are_filtered(self, caplog):
        """N rows with K invalid map to N-K entities with matching coordinates."""
        rows = [
            incident_row("INC-A", lat=10.0, lng=20.0),
            incident_row("INC-B", lat=math.nan),
            incident_row("INC-C", lat=-33.9, lng=151.2),
            incident_row("INC-D", lat=None, lng=None),
            incident_row("INC-E", lat=95.0),
        ]

        with caplog.at_level(logging.WARNING):
            incidents = map_rows(rows, map_incident_row, "incidents")

        assert [i.id for i in incidents] == ["INC-A", "INC-C"]
        assert (incidents[0].location.lat, incidents[0].location.lng) == (10.0, 20.0)
        assert (incidents[1].location.lat, incidents[1].location.lng) == (-33.9, 151.2)
        assert "Discarded 3 of 5 incidents" in caplog.text

    def test_none_rows(self):
        assert map_rows(None, map_unit_row) == []


class TestParseTimestamp:
    """Timestamp parsing."""

    def test_zulu_suffix(self):
        assert parse_timestamp("2025-01-01T08:00:00Z") == datetime(2025, 1, 1, 8, tzinfo=UTC)

    def test_naive_is_utc(self):
        parsed = parse_timestamp("2025-01-01T08:00:00")

        assert parsed.utcoffset().total_seconds() == 0

    def test_offset_converted(self):
        parsed = parse_timestamp("2025-01-01T00:00:00-08:00")

        assert parsed == datetime(2025, 1, 1, 8, tzinfo=UTC)

    @pytest.mark.parametrize("value", [None, "", "yesterday"])
    def test_unparseable(self, value):
        assert parse_timestamp(value) is None
