"""Shared test fixtures for ResQ dispatch tests."""

import asyncio
import copy
import itertools
from datetime import UTC, datetime
from unittest.mock import patch

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from resq_dispatch.backend import BackendError, BackendResult
from resq_dispatch.config import ResQConfig
from resq_dispatch.config import config as app_config
from resq_dispatch.dispatch import DispatchService
from resq_dispatch.feed import InMemoryChangeFeed
from resq_dispatch.geo import (
    calculate_distance_km,
    estimate_eta_minutes,
    extract_coordinates,
    interpolate_route,
)
from resq_dispatch.realtime import RealtimeSync
from resq_dispatch.routes import (
    dispatch_router,
    incidents_router,
    realtime_router,
    units_router,
)
from resq_dispatch.routes.deps import get_backend, get_feed, get_realtime, get_store
from resq_dispatch.service import IncidentService
from resq_dispatch.store import ResQStore


def incident_row(incident_id, lat=47.6062, lng=-122.3321, **overrides):
    """Raw ``incidents`` row with direct lat/lng columns."""
    row = {
        "id": incident_id,
        "type": "fire",
        "status": "pending",
        "severity": "high",
        "description": "Smoke from a second floor window",
        "lat": lat,
        "lng": lng,
        "address": "400 Pine St, Seattle",
        "reported_by": None,
        "reported_by_name": "Jane Citizen",
        "reported_at": "2025-01-01T08:00:00Z",
        "created_at": "2025-01-01T08:00:00Z",
        "is_verified": False,
        "verification_count": 0,
        "assigned_unit_ids": [],
        "image_url": None,
    }
    row.update(overrides)
    return row


def unit_row(unit_id, lat=47.61, lng=-122.34, **overrides):
    """Raw ``units`` row with a GeoJSON location."""
    row = {
        "id": unit_id,
        "name": f"Engine {unit_id}",
        "type": "fire-truck",
        "status": "available",
        "location": {"type": "Point", "coordinates": [lng, lat]},
    }
    row.update(overrides)
    return row


class FakeBackend:
    """In-memory stand-in for the hosted backend.

    Tables are lists of row dicts. The RPCs behave like the stored procedures:
    previews interpolate straight routes, dispatch creation updates the
    incident and unit rows in one step. Any operation can be made to fail
    with :meth:`fail`.
    """

    def __init__(self):
        self.tables: dict[str, list[dict]] = {"incidents": [], "units": [], "dispatches": []}
        self.objects: dict[tuple[str, str], bytes] = {}
        self.user_id: str | None = None
        self.calls: list[tuple] = []
        self.errors: dict[str, BackendError] = {}
        self._ids = itertools.count(1)
        self.procedures = {
            "preview_routes": self._preview_routes,
            "create_dispatch": self._create_dispatch,
            "get_nearby_units": self._get_nearby_units,
            "report_incident": self._report_incident,
        }

    def fail(self, key: str, message: str = "permission denied", code: str = "42501") -> None:
        """Make an operation fail, e.g. ``fail("rpc:create_dispatch")``."""
        self.errors[key] = BackendError(message=message, code=code)

    def calls_to(self, op: str) -> list[tuple]:
        return [call for call in self.calls if call[0] == op]

    def _error(self, key: str) -> BackendResult | None:
        if key in self.errors:
            return BackendResult(error=self.errors[key])
        return None

    @staticmethod
    def _matches(row, eq=None, in_filter=None) -> bool:
        for column, value in (eq or {}).items():
            if str(row.get(column)) != str(value):
                return False
        if in_filter is not None:
            column, values = in_filter
            if str(row.get(column)) not in {str(v) for v in values}:
                return False
        return True

    def _find(self, table, row_id):
        return next((r for r in self.tables[table] if str(r.get("id")) == str(row_id)), None)

    async def select(
        self, table, *, columns="*", order_by=None, ascending=True, in_filter=None, eq=None
    ):
        self.calls.append(("select", table, {"order_by": order_by, "ascending": ascending,
                                             "in_filter": in_filter, "eq": eq}))
        if failure := self._error(f"select:{table}"):
            return failure

        rows = [copy.deepcopy(r) for r in self.tables.get(table, []) if self._matches(r, eq, in_filter)]
        if order_by:
            rows.sort(key=lambda r: str(r.get(order_by) or ""), reverse=not ascending)
        if columns != "*":
            wanted = [c.strip() for c in columns.split(",")]
            rows = [{c: r.get(c) for c in wanted} for r in rows]
        return BackendResult(data=rows)

    async def update(self, table, values, *, eq):
        self.calls.append(("update", table, values, eq))
        if failure := self._error(f"update:{table}"):
            return failure
        updated = []
        for row in self.tables[table]:
            if self._matches(row, eq):
                row.update(values)
                updated.append(copy.deepcopy(row))
        return BackendResult(data=updated)

    async def delete(self, table, *, eq):
        self.calls.append(("delete", table, eq))
        if failure := self._error(f"delete:{table}"):
            return failure
        removed = [r for r in self.tables[table] if self._matches(r, eq)]
        self.tables[table] = [r for r in self.tables[table] if not self._matches(r, eq)]
        return BackendResult(data=removed)

    async def rpc(self, name, params):
        self.calls.append(("rpc", name, params))
        if failure := self._error(f"rpc:{name}"):
            return failure
        return BackendResult(data=self.procedures[name](params))

    async def upload(self, bucket, key, content, *, content_type, cache_control="3600", upsert=False):
        self.calls.append(("upload", bucket, key, content_type, cache_control, upsert))
        if failure := self._error(f"upload:{bucket}"):
            return failure
        self.objects[(bucket, key)] = content
        return BackendResult(data=f"https://storage.test/storage/v1/object/public/{bucket}/{key}")

    async def remove(self, bucket, keys):
        self.calls.append(("remove", bucket, list(keys)))
        if failure := self._error(f"remove:{bucket}"):
            return failure
        for key in keys:
            self.objects.pop((bucket, key), None)
        return BackendResult(data=[{"name": key} for key in keys])

    async def current_user_id(self):
        return self.user_id

    # Stored procedures

    def _position(self, row):
        coords = extract_coordinates(row)
        return coords.lat, coords.lng

    def _preview_routes(self, params):
        incident = self._find("incidents", params["p_incident_id"])
        target = self._position(incident)
        routes = []
        for unit_id in params["p_unit_ids"]:
            unit = self._find("units", unit_id)
            if unit is None:
                continue
            start = self._position(unit)
            distance = calculate_distance_km(*start, *target)
            routes.append(
                {
                    "unitId": unit_id,
                    "unitName": unit.get("name"),
                    "route": [list(p) for p in interpolate_route(start, target)],
                    "distance": distance,
                    "eta": estimate_eta_minutes(distance),
                }
            )
        return {"incidentId": params["p_incident_id"], "routes": routes}

    def _create_dispatch(self, params):
        incident = self._find("incidents", params["p_incident_id"])
        target = self._position(incident)
        created = []
        for unit_id in params["p_unit_ids"]:
            unit = self._find("units", unit_id)
            start = self._position(unit)
            dispatch_id = f"DSP-{next(self._ids):04d}"
            distance = calculate_distance_km(*start, *target)
            self.tables["dispatches"].append(
                {
                    "id": dispatch_id,
                    "incident_id": params["p_incident_id"],
                    "unit_id": unit_id,
                    "dispatcher_id": params["p_dispatcher_id"],
                    "status": "dispatched",
                    "route_geojson": {
                        "type": "LineString",
                        "coordinates": [[lng, lat] for lat, lng in interpolate_route(start, target)],
                    },
                    "eta_minutes": estimate_eta_minutes(distance),
                    "dispatched_at": datetime.now(UTC).isoformat(),
                }
            )
            unit["status"] = "dispatched"
            created.append({"dispatchId": dispatch_id, "unitId": unit_id})

        incident["status"] = "responding"
        incident["assigned_unit_ids"] = list(
            dict.fromkeys([*(incident.get("assigned_unit_ids") or []), *params["p_unit_ids"]])
        )
        return {
            "success": True,
            "incidentId": params["p_incident_id"],
            "dispatches": created,
            "dispatchedCount": len(created),
        }

    def _get_nearby_units(self, params):
        rows = []
        for unit in self.tables["units"]:
            if unit.get("status") != "available":
                continue
            if params.get("p_type") and unit.get("type") != params["p_type"]:
                continue
            distance = calculate_distance_km(params["p_lat"], params["p_lng"], *self._position(unit))
            if distance <= params["p_radius_km"]:
                rows.append(
                    {
                        "unit_id": unit["id"],
                        "label": unit.get("name"),
                        "unit_type": unit.get("type"),
                        "distance_km": distance,
                    }
                )
        return rows

    def _report_incident(self, params):
        incident_id = f"INC-20250102-{next(self._ids):04d}"
        self.tables["incidents"].append(
            incident_row(
                incident_id,
                lat=params["p_lat"],
                lng=params["p_lng"],
                type=params["p_type"],
                severity=params["p_severity"],
                description=params["p_description"],
                address=params["p_address"],
                reported_by_name=params["p_reported_by_name"],
                image_url=params["p_image_url"],
            )
        )
        return incident_id


@pytest.fixture
def config():
    """Test configuration."""
    return ResQConfig(
        supabase_url="http://supabase.test",
        supabase_anon_key="anon-key",
        max_retries=2,
        log_level="DEBUG",
    )


@pytest.fixture
def backend():
    """Backend seeded with a small city: three incidents and three units."""
    fake = FakeBackend()
    fake.tables["incidents"] = [
        incident_row("INC-20250101-0001", created_at="2025-01-01T08:00:00Z"),
        incident_row(
            "INC-20250101-0002",
            lat=47.6205,
            lng=-122.3493,
            type="medical",
            severity="critical",
            created_at="2025-01-01T09:00:00Z",
        ),
        incident_row(
            "INC-20250101-0003",
            lat=47.5990,
            lng=-122.3280,
            type="crime",
            severity="medium",
            created_at="2025-01-01T10:00:00Z",
        ),
    ]
    fake.tables["units"] = [
        unit_row("UNIT-1"),
        unit_row("UNIT-2", lat=47.60, lng=-122.32, type="ambulance", name="Medic 2"),
        {
            "id": "UNIT-3",
            "label": "Patrol 3",
            "type": "police-car",
            "is_available": False,
            "location": "POINT(-122.30 47.62)",
        },
    ]
    return fake


@pytest.fixture
def incident_service(backend):
    return IncidentService(backend)


@pytest.fixture
def dispatch_service(backend):
    return DispatchService(backend)


@pytest.fixture
def store(incident_service, dispatch_service, config):
    """Empty store wired to the fake backend."""
    return ResQStore(incident_service, dispatch_service, config)


@pytest.fixture
async def loaded_store(store):
    """Store after the initial bulk load."""
    await store.load_all()
    return store


def create_test_app() -> FastAPI:
    """Create a lightweight FastAPI test app without the production lifespan.

    No backend client is started, nothing is bulk loaded and no realtime
    channels are opened; tests wire the dependencies themselves.
    """
    test_app = FastAPI(
        title="Test ResQ Dispatch API",
        version="0.1.0",
        # No lifespan parameter
    )
    test_app.include_router(incidents_router)
    test_app.include_router(units_router)
    test_app.include_router(dispatch_router)
    test_app.include_router(realtime_router)
    return test_app


WEBHOOK_SECRET = "test-webhook-secret"


@pytest.fixture
def webhook_headers():
    """Headers carrying the shared secret, with the secret configured."""
    with patch.object(app_config, "webhook_secret", WEBHOOK_SECRET):
        yield {"X-Webhook-Secret": WEBHOOK_SECRET}


@pytest.fixture
def change_feed():
    return InMemoryChangeFeed()


@pytest.fixture
def api_store(store):
    """Loaded store for the synchronous API tests."""
    asyncio.run(store.load_all())
    return store


@pytest.fixture
def test_client(api_store, backend, change_feed):
    """Test client with the store, backend and feed dependencies overridden."""
    test_app = create_test_app()
    realtime = RealtimeSync(api_store, change_feed)
    test_app.dependency_overrides[get_store] = lambda: api_store
    test_app.dependency_overrides[get_backend] = lambda: backend
    test_app.dependency_overrides[get_feed] = lambda: change_feed
    test_app.dependency_overrides[get_realtime] = lambda: realtime

    with TestClient(test_app) as client:
        yield client

    test_app.dependency_overrides = {}
