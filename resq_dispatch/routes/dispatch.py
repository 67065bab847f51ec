"""Dispatch workflow API routes for FastAPI."""

import logging

from fastapi import APIRouter, Depends, HTTPException, status

from ..api_models import DispatchRequest, DispatchStateResponse, RoutesResponse
from ..dispatch import DispatchCommitError, DispatchStateError
from ..store import ResQStore
from .deps import get_store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/dispatch", tags=["dispatch"])


def _conflict(e: DispatchStateError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


def _routes_response(store: ResQStore, message: str) -> RoutesResponse:
    return RoutesResponse(
        success=True,
        message=message,
        data=store.dispatch_routes,
        preview=store.preview_routes,
        count=len(store.dispatch_routes),
    )


@router.get("/routes", response_model=RoutesResponse, summary="Dispatch routes")
async def list_routes(store: ResQStore = Depends(get_store)) -> RoutesResponse:
    return _routes_response(store, f"Retrieved {len(store.dispatch_routes)} routes")


@router.get("/state", response_model=DispatchStateResponse)
async def dispatch_state(store: ResQStore = Depends(get_store)) -> DispatchStateResponse:
    return DispatchStateResponse(
        success=True,
        message=f"Dispatch is {store.dispatch_state.phase.value}",
        data=store.dispatch_state,
    )


@router.post(
    "/preview",
    response_model=RoutesResponse,
    summary="Preview dispatch",
    description="Compute routes for the units without creating dispatches",
)
async def preview(
    request: DispatchRequest, store: ResQStore = Depends(get_store)
) -> RoutesResponse:
    try:
        routes = await store.perform_preview_dispatch(request.incident_id, request.unit_ids)
    except DispatchStateError as e:
        raise _conflict(e) from e

    return _routes_response(store, f"Previewed {len(routes)} routes")


@router.post("/commit", response_model=RoutesResponse, summary="Commit dispatch")
async def commit(
    request: DispatchRequest, store: ResQStore = Depends(get_store)
) -> RoutesResponse:
    """Create the dispatches and mark the incident and units accordingly."""
    try:
        routes = await store.perform_commit_dispatch(request.incident_id, request.unit_ids)
    except DispatchStateError as e:
        raise _conflict(e) from e
    except DispatchCommitError as e:
        logger.error(f"Dispatch for incident {request.incident_id} failed: {e}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e)) from e

    return _routes_response(store, f"Dispatched {len(routes)} units")


@router.post("/cancel", response_model=DispatchStateResponse)
async def cancel(store: ResQStore = Depends(get_store)) -> DispatchStateResponse:
    store.cancel_dispatch()
    return DispatchStateResponse(
        success=True, message="Dispatch cancelled", data=store.dispatch_state
    )
