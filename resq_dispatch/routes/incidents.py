"""Incident API routes for FastAPI."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ..api_models import (
    FilterRequest,
    IncidentResponse,
    IncidentsResponse,
    ReportIncidentRequest,
    ReportIncidentResponse,
    StatusUpdateRequest,
    VerifyIncidentResponse,
)
from ..backend import Backend, OperationError
from ..config import config
from ..incidents import (
    delete_incident,
    get_incident_by_id,
    report_incident,
    update_incident_status,
    verify_incident,
)
from ..models import ALL_CATEGORIES, IncidentType
from ..store import ResQStore, filter_incidents
from .deps import get_backend, get_store, operation_error

logger = logging.getLogger(__name__)

# Create router for incident endpoints
router = APIRouter(prefix="/incidents", tags=["incidents"])


def _validate_category(category: str) -> str:
    if category == ALL_CATEGORIES:
        return category
    try:
        return IncidentType(category).value
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unknown incident category '{category}'",
        ) from None


@router.get(
    "",
    response_model=IncidentsResponse,
    summary="List incidents",
    description="Returns incidents from the store, filtered by category",
)
async def list_incidents(
    category: str | None = Query(
        None, description="'all' or an incident type; defaults to the active filter"
    ),
    limit: int = Query(
        100, ge=1, le=1000, description="Maximum number of incidents to return"
    ),
    offset: int = Query(0, ge=0, description="Number of incidents to skip"),
    store: ResQStore = Depends(get_store),
) -> IncidentsResponse:
    """List incidents without changing the store's active filter."""
    if category is None:
        applied = store.active_filter
        incidents = store.visible_incidents
    else:
        applied = _validate_category(category)
        incidents = filter_incidents(store.incidents, applied)

    total_count = len(incidents)
    page = incidents[offset : offset + limit]
    logger.debug(f"Listing {len(page)} of {total_count} incidents (filter={applied})")

    return IncidentsResponse(
        success=True,
        message=f"Retrieved {len(page)} incidents",
        data=page,
        count=len(page),
        metadata={
            "filter": applied,
            "total_filtered": total_count,
            "total_available": len(store.incidents),
            "limit": limit,
            "offset": offset,
            "has_more": offset + limit < total_count,
        },
    )


@router.put("/filter", response_model=IncidentsResponse, summary="Set the active filter")
async def set_filter(
    request: FilterRequest, store: ResQStore = Depends(get_store)
) -> IncidentsResponse:
    store.set_active_filter(_validate_category(request.category))
    visible = store.visible_incidents
    return IncidentsResponse(
        success=True,
        message=f"Active filter set to '{store.active_filter}'",
        data=visible,
        count=len(visible),
        metadata={"filter": store.active_filter},
    )


@router.post(
    "",
    response_model=ReportIncidentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Report an incident",
)
async def create_incident(
    request: ReportIncidentRequest,
    store: ResQStore = Depends(get_store),
    backend: Backend = Depends(get_backend),
) -> ReportIncidentResponse:
    """Report a new incident.

    The incident reaches the store through the realtime feed; the new ID is
    fetched eagerly so it is visible right away.
    """
    try:
        report = request.to_input(user_id=await backend.current_user_id())
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e)
        ) from e

    try:
        incident_id = await report_incident(backend, report, bucket=config.image_bucket)
    except OperationError as e:
        raise operation_error(e) from e

    incident = await get_incident_by_id(backend, incident_id)
    if incident is not None and store.is_alive:
        store.add_incident(incident)

    return ReportIncidentResponse(
        success=True,
        message=f"Incident {incident_id} reported",
        incident_id=incident_id,
    )


@router.get(
    "/{incident_id}",
    response_model=IncidentResponse,
    summary="Get specific incident",
)
async def get_incident(
    incident_id: str,
    store: ResQStore = Depends(get_store),
    backend: Backend = Depends(get_backend),
) -> IncidentResponse:
    """Get an incident from the store, falling back to the backend."""
    incident = store.get_incident(incident_id)
    if incident is None:
        incident = await get_incident_by_id(backend, incident_id)

    if incident is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Incident {incident_id} not found",
        )

    return IncidentResponse(
        success=True, message=f"Retrieved incident {incident_id}", data=incident
    )


@router.patch("/{incident_id}/status", response_model=IncidentResponse)
async def change_status(
    incident_id: str,
    request: StatusUpdateRequest,
    store: ResQStore = Depends(get_store),
    backend: Backend = Depends(get_backend),
) -> IncidentResponse:
    try:
        await update_incident_status(backend, incident_id, request.status)
    except OperationError as e:
        raise operation_error(e) from e

    updated = store.update_incident(incident_id, {"status": request.status})
    return IncidentResponse(
        success=True,
        message=f"Incident {incident_id} is now {request.status.value}",
        data=updated,
    )


@router.post("/{incident_id}/verify", response_model=VerifyIncidentResponse)
async def verify(
    incident_id: str,
    store: ResQStore = Depends(get_store),
    backend: Backend = Depends(get_backend),
) -> VerifyIncidentResponse:
    try:
        count = await verify_incident(backend, incident_id)
    except OperationError as e:
        raise operation_error(e) from e

    store.update_incident(incident_id, {"verification_count": count})
    return VerifyIncidentResponse(
        success=True,
        message=f"Incident {incident_id} verified",
        verification_count=count,
    )


@router.delete("/{incident_id}", response_model=IncidentResponse)
async def remove_incident(
    incident_id: str,
    store: ResQStore = Depends(get_store),
    backend: Backend = Depends(get_backend),
) -> IncidentResponse:
    try:
        await delete_incident(backend, incident_id)
    except OperationError as e:
        raise operation_error(e) from e

    store.remove_incident(incident_id)
    return IncidentResponse(success=True, message=f"Incident {incident_id} deleted")
