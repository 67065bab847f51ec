"""API request and response models for the HTTP surface."""

import base64
import binascii
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator

from .models import (
    DispatchRoute,
    DispatchState,
    EmergencyUnit,
    Incident,
    IncidentImage,
    IncidentStatus,
    IncidentType,
    NearbyUnit,
    ReportIncidentInput,
    Severity,
)


class APIResponse(BaseModel):
    """Base API response model."""

    success: bool = Field(..., description="Whether the request was successful")
    message: str = Field(..., description="Response message")
    timestamp: datetime = Field(
        default_factory=datetime.now, description="Response timestamp"
    )


class IncidentResponse(APIResponse):
    """Response model for single incident."""

    data: Incident | None = Field(None, description="Incident data")


class IncidentsResponse(APIResponse):
    """Response model for multiple incidents."""

    data: list[Incident] = Field(default_factory=list, description="List of incidents")
    count: int = Field(..., description="Number of incidents returned")
    metadata: dict[str, Any] = Field(
        default_factory=dict, description="Additional metadata"
    )


class UnitResponse(APIResponse):
    data: EmergencyUnit | None = None


class UnitsResponse(APIResponse):
    data: list[EmergencyUnit] = Field(default_factory=list)
    count: int


class NearbyUnitsResponse(APIResponse):
    data: list[NearbyUnit] = Field(default_factory=list)
    count: int


class RoutesResponse(APIResponse):
    """Confirmed and preview dispatch routes."""

    data: list[DispatchRoute] = Field(default_factory=list)
    preview: list[DispatchRoute] = Field(default_factory=list)
    count: int


class DispatchStateResponse(APIResponse):
    data: DispatchState


class ReportIncidentResponse(APIResponse):
    incident_id: str = Field(..., description="Backend assigned incident ID")


class VerifyIncidentResponse(APIResponse):
    verification_count: int


class DispatchRequest(BaseModel):
    """Units to preview or commit for an incident."""

    incident_id: str = Field(..., min_length=1)
    unit_ids: list[str] | None = Field(
        None, description="Units to dispatch; defaults to the current selection"
    )


class StatusUpdateRequest(BaseModel):
    status: IncidentStatus


class FilterRequest(BaseModel):
    category: str = Field(..., description="'all' or an incident type")


class ReportIncidentRequest(BaseModel):
    """New incident report, with an optional base64 encoded photo."""

    lat: float
    lng: float
    title: str | None = None
    description: str
    type: IncidentType
    severity: Severity
    address: str | None = None
    reported_by_name: str = "Anonymous"
    image_filename: str | None = None
    image_content_type: str | None = None
    image_base64: str | None = None

    @field_validator("image_base64")
    @classmethod
    def validate_image_base64(cls, v):
        """Make sure the photo payload decodes."""
        if v is None:
            return v
        try:
            base64.b64decode(v, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValueError("image_base64 is not valid base64") from e
        return v

    def to_input(self, user_id: str | None = None) -> ReportIncidentInput:
        image = None
        if self.image_base64:
            image = IncidentImage(
                filename=self.image_filename or "upload.jpg",
                content_type=self.image_content_type or "application/octet-stream",
                content=base64.b64decode(self.image_base64),
            )
        return ReportIncidentInput(
            lat=self.lat,
            lng=self.lng,
            title=self.title,
            description=self.description,
            type=self.type,
            severity=self.severity,
            address=self.address,
            reported_by_name=self.reported_by_name,
            user_id=user_id,
            image=image,
        )


class HealthResponse(BaseModel):
    """Health check response model."""

    status: str = Field(..., description="Service health status")
    service: str = Field(..., description="Service name")
    version: str = Field(..., description="Service version")
    timestamp: datetime = Field(
        default_factory=datetime.now, description="Health check timestamp"
    )
    config: dict[str, Any] = Field(
        default_factory=dict, description="Configuration details"
    )
    store_status: dict[str, Any] | None = Field(None, description="Store statistics")
    realtime_status: dict[str, Any] | None = Field(
        None, description="Realtime sync health status"
    )
