"""Tests for coordinate extraction and geo helpers."""

import json
import logging
import math

import pytest
from hypothesis import given
from hypothesis import strategies as st

from resq_dispatch.geo import (
    EXTRACTION_STRATEGIES,
    calculate_distance_km,
    estimate_eta_minutes,
    extract_coordinates,
    from_wkt_location,
    interpolate_route,
    is_finite_lat_lng,
    point_wkt,
)

latitudes = st.floats(min_value=-90, max_value=90, allow_nan=False, allow_infinity=False)
longitudes = st.floats(min_value=-180, max_value=180, allow_nan=False, allow_infinity=False)

SHAPES = {
    "direct": lambda lat, lng: {"id": "X", "lat": lat, "lng": lng},
    "geojson": lambda lat, lng: {"id": "X", "location": {"type": "Point", "coordinates": [lng, lat]}},
    "nested": lambda lat, lng: {"id": "X", "location": {"lat": lat, "lng": lng}},
    "planar": lambda lat, lng: {"id": "X", "location": {"x": lng, "y": lat}},
    "wkt": lambda lat, lng: {"id": "X", "location": point_wkt(lat, lng)},
    "json": lambda lat, lng: {
        "id": "X",
        "location": json.dumps({"type": "Point", "coordinates": [lng, lat]}),
    },
}

BAD_VALUES = [math.nan, math.inf, -math.inf, None]


def _warnings(caplog):
    return [r for r in caplog.records if r.levelno == logging.WARNING and r.name == "resq_dispatch.geo"]


class TestExtractCoordinates:
    """Coordinate normalizer behaviour."""

    @pytest.mark.parametrize("shape", list(SHAPES))
    @given(lat=latitudes, lng=longitudes)
    def test_round_trip_all_shapes(self, shape, lat, lng):
        """Every supported shape yields the encoded pair back."""
        coords = extract_coordinates(SHAPES[shape](lat, lng))

        assert coords is not None
        assert coords.lat == lat
        assert coords.lng == lng

    @pytest.mark.parametrize("shape", ["direct", "geojson", "nested", "planar"])
    @pytest.mark.parametrize("bad", BAD_VALUES)
    def test_rejects_non_finite_values(self, shape, bad, caplog):
        """NaN, infinities and None are rejected with exactly one warning."""
        row = SHAPES[shape](bad, 10.0)

        with caplog.at_level(logging.WARNING, logger="resq_dispatch.geo"):
            assert extract_coordinates(row) is None

        warnings = _warnings(caplog)
        assert len(warnings) == 1
        assert warnings[0].row is row

    @pytest.mark.parametrize(
        "location",
        ["POINT(NaN 10)", "POINT(inf 10)", '{"coordinates": [NaN, 10]}', "nowhere", ""],
    )
    def test_rejects_unusable_strings(self, location, caplog):
        """String locations that do not encode a finite point are rejected."""
        with caplog.at_level(logging.WARNING, logger="resq_dispatch.geo"):
            assert extract_coordinates({"id": "X", "location": location}) is None

        assert len(_warnings(caplog)) == 1

    def test_missing_location(self, caplog):
        """A row with no position at all is rejected once."""
        with caplog.at_level(logging.WARNING, logger="resq_dispatch.geo"):
            assert extract_coordinates({"id": "X", "type": "fire"}) is None

        assert len(_warnings(caplog)) == 1

    def test_non_mapping_row(self, caplog):
        """Non-dict input never raises."""
        with caplog.at_level(logging.WARNING, logger="resq_dispatch.geo"):
            assert extract_coordinates(None) is None
            assert extract_coordinates(["lat", "lng"]) is None

        assert len(_warnings(caplog)) == 2

    def test_strings_are_not_numbers(self):
        """Numeric strings on the direct fields are not accepted."""
        assert extract_coordinates({"lat": "47.6", "lng": "-122.3"}) is None

    def test_booleans_are_not_numbers(self):
        assert extract_coordinates({"lat": True, "lng": False}) is None

    def test_direct_fields_take_priority(self):
        """The first matching strategy wins."""
        row = {
            "lat": 1.0,
            "lng": 2.0,
            "location": {"type": "Point", "coordinates": [20.0, 10.0]},
        }

        coords = extract_coordinates(row)

        assert (coords.lat, coords.lng) == (1.0, 2.0)

    def test_geojson_order_swap(self):
        """GeoJSON positions are [lng, lat]."""
        coords = extract_coordinates({"location": {"coordinates": [-122.33, 47.61]}})

        assert coords.lat == 47.61
        assert coords.lng == -122.33

    def test_no_range_clamping(self):
        """Out-of-range but finite values pass through unchanged."""
        coords = extract_coordinates({"lat": 123.0, "lng": 456.0})

        assert (coords.lat, coords.lng) == (123.0, 456.0)

    def test_strategy_error_falls_through(self):
        """A strategy that raises is skipped."""

        def broken(row):
            raise RuntimeError("boom")

        strategies = (("broken", broken),) + EXTRACTION_STRATEGIES

        coords = extract_coordinates({"lat": 1.5, "lng": 2.5}, strategies=strategies)

        assert (coords.lat, coords.lng) == (1.5, 2.5)

    def test_strategy_order(self):
        assert [name for name, _ in EXTRACTION_STRATEGIES] == [
            "direct",
            "geojson",
            "nested",
            "planar",
            "wkt",
            "json",
        ]


class TestWktParsing:
    """WKT point strategy."""

    @pytest.mark.parametrize(
        "text,expected",
        [
            ("POINT(-122.33 47.61)", (47.61, -122.33)),
            ("point( -122.33   47.61 )", (47.61, -122.33)),
            ("SRID=4326;POINT(-1.5e2 4.5E1)", (45.0, -150.0)),
            ("POINT(0 0)", (0.0, 0.0)),
        ],
    )
    def test_variants(self, text, expected):
        """Case, whitespace, SRID prefix and exponent notation."""
        coords = from_wkt_location({"location": text})

        assert (coords.lat, coords.lng) == expected

    def test_not_a_point(self):
        assert from_wkt_location({"location": "LINESTRING(0 0, 1 1)"}) is None


class TestGeoHelpers:
    """Distance, ETA and route helpers."""

    def test_is_finite_lat_lng(self):
        assert is_finite_lat_lng(1, 2.5)
        assert not is_finite_lat_lng(math.nan, 0)
        assert not is_finite_lat_lng(0, "1")
        assert not is_finite_lat_lng(None, 0)

    def test_distance_same_point(self):
        assert calculate_distance_km(47.6, -122.3, 47.6, -122.3) == 0

    def test_distance_one_degree_latitude(self):
        """One degree of latitude is about 111 km."""
        assert calculate_distance_km(0, 0, 1, 0) == pytest.approx(111.19, abs=0.01)

    @pytest.mark.parametrize(
        "distance,expected", [(0, 0), (0.1, 1), (1.0, 2), (2.4, 5), (2.5, 5), (10, 20)]
    )
    def test_eta_heuristic(self, distance, expected):
        """Two minutes per kilometre, rounded up."""
        assert estimate_eta_minutes(distance) == expected

    def test_interpolate_route(self):
        """Default route has eleven points from start to end."""
        route = interpolate_route((0.0, 0.0), (1.0, 2.0))

        assert len(route) == 11
        assert route[0] == (0.0, 0.0)
        assert route[-1] == (1.0, 2.0)
        assert route[5] == pytest.approx((0.5, 1.0))

    def test_interpolate_route_requires_steps(self):
        with pytest.raises(ValueError):
            interpolate_route((0, 0), (1, 1), steps=0)

    def test_point_wkt(self):
        assert point_wkt(47.5, -122.25) == "POINT(-122.25 47.5)"
