"""Emergency unit API routes for FastAPI."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ..api_models import NearbyUnitsResponse, UnitResponse, UnitsResponse
from ..models import UnitStatus, UnitType
from ..store import ResQStore
from .deps import get_store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/units", tags=["units"])


@router.get("", response_model=UnitsResponse, summary="List units")
async def list_units(
    status_filter: UnitStatus | None = Query(None, alias="status"),
    unit_type: UnitType | None = Query(None, alias="type"),
    store: ResQStore = Depends(get_store),
) -> UnitsResponse:
    units = store.units
    if status_filter is not None:
        units = [u for u in units if u.status == status_filter]
    if unit_type is not None:
        units = [u for u in units if u.type == unit_type]

    return UnitsResponse(
        success=True, message=f"Retrieved {len(units)} units", data=units, count=len(units)
    )


@router.get(
    "/nearby",
    response_model=NearbyUnitsResponse,
    summary="Find nearby available units",
    description="Available units within a radius, closest first",
)
async def nearby_units(
    lat: float = Query(..., ge=-90, le=90),
    lng: float = Query(..., ge=-180, le=180),
    unit_type: str | None = Query(None, alias="type"),
    radius_km: float | None = Query(None, gt=0),
    store: ResQStore = Depends(get_store),
) -> NearbyUnitsResponse:
    units = await store.dispatch_service.find_nearby_units(
        lat, lng, unit_type=unit_type, radius_km=radius_km
    )
    return NearbyUnitsResponse(
        success=True,
        message=f"Found {len(units)} nearby units",
        data=units,
        count=len(units),
    )


@router.get("/{unit_id}", response_model=UnitResponse, summary="Get specific unit")
async def get_unit(unit_id: str, store: ResQStore = Depends(get_store)) -> UnitResponse:
    unit = store.get_unit(unit_id)
    if unit is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail=f"Unit {unit_id} not found"
        )
    return UnitResponse(success=True, message=f"Retrieved unit {unit_id}", data=unit)


@router.post("/{unit_id}/select", response_model=UnitsResponse)
async def toggle_selection(
    unit_id: str, store: ResQStore = Depends(get_store)
) -> UnitsResponse:
    """Toggle a unit in the dispatch selection."""
    if store.get_unit(unit_id) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail=f"Unit {unit_id} not found"
        )
    store.toggle_unit_selection(unit_id)
    selected = [u for u in store.units if u.id in store.selected_units_for_dispatch]
    return UnitsResponse(
        success=True,
        message=f"{len(selected)} units selected for dispatch",
        data=selected,
        count=len(selected),
    )
