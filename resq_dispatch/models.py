"""Data models for incidents, emergency units and dispatch routes."""

import math
from collections.abc import Mapping
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

ALL_CATEGORIES = "all"


class IncidentType(str, Enum):
    """Incident category as reported by citizens."""

    FIRE = "fire"
    MEDICAL = "medical"
    ACCIDENT = "accident"
    POLICE = "police"
    CRIME = "crime"
    OTHER = "other"


# police and crime are two historical tags for the same category
CATEGORY_SYNONYMS: dict[IncidentType, frozenset[IncidentType]] = {
    IncidentType.POLICE: frozenset({IncidentType.POLICE, IncidentType.CRIME}),
    IncidentType.CRIME: frozenset({IncidentType.POLICE, IncidentType.CRIME}),
}


class IncidentStatus(str, Enum):
    """Lifecycle status of an incident."""

    PENDING = "pending"
    RESPONDING = "responding"
    RESOLVED = "resolved"
    DUPLICATE = "duplicate"
    UNVERIFIED = "unverified"
    IN_PROGRESS = "in_progress"  # legacy backend value


class Severity(str, Enum):
    """Incident severity."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class UnitType(str, Enum):
    """Kind of dispatchable resource."""

    AMBULANCE = "ambulance"
    FIRE_TRUCK = "fire-truck"
    POLICE_CAR = "police-car"


class UnitStatus(str, Enum):
    """Availability of an emergency unit."""

    AVAILABLE = "available"
    DISPATCHED = "dispatched"
    BUSY = "busy"
    OFFLINE = "offline"  # only ever set by the backend


class Coordinates(BaseModel):
    """A finite latitude/longitude pair as extracted from a backend row.

    No range check happens here; range validation belongs to the entity
    models that embed a location.
    """

    model_config = ConfigDict(frozen=True)

    lat: float
    lng: float


class GeoPoint(BaseModel):
    """Validated location of an entity held by the store."""

    lat: float = Field(..., ge=-90, le=90, allow_inf_nan=False)
    lng: float = Field(..., ge=-180, le=180, allow_inf_nan=False)


class IncidentLocation(GeoPoint):
    """Incident location with an optional human readable address."""

    address: str | None = None


class Incident(BaseModel):
    """An emergency report."""

    id: str = Field(..., min_length=1, description="Backend assigned incident ID")
    type: IncidentType = Field(..., description="Incident category")
    status: IncidentStatus = Field(default=IncidentStatus.PENDING)
    severity: Severity = Field(default=Severity.MEDIUM)
    description: str = Field(default="")
    location: IncidentLocation
    reported_by: str = Field(default="Anonymous", description="Reporter display name")
    reporter_id: str | None = Field(None, description="Authenticated reporter ID")
    reported_at: datetime
    is_verified: bool = False
    verification_count: int = Field(default=0, ge=0)
    assigned_units: list[str] = Field(default_factory=list)
    image_url: str | None = None

    @field_validator("id")
    @classmethod
    def validate_id(cls, v):
        """Validate incident ID is not blank."""
        if not v.strip():
            raise ValueError("Incident ID cannot be empty")
        return v.strip()

    @field_validator("assigned_units")
    @classmethod
    def validate_assigned_units(cls, v):
        """Drop blank unit IDs."""
        return [str(unit).strip() for unit in v if unit and str(unit).strip()]

    def matches_category(self, category: IncidentType | str) -> bool:
        """Check whether this incident belongs to a category filter value."""
        category = IncidentType(category)
        return self.type in CATEGORY_SYNONYMS.get(category, frozenset({category}))


class EmergencyUnit(BaseModel):
    """A dispatchable resource such as an ambulance or fire truck."""

    id: str = Field(..., min_length=1)
    name: str
    type: UnitType
    status: UnitStatus = Field(default=UnitStatus.AVAILABLE)
    location: GeoPoint
    distance_km: float | None = Field(None, ge=0)


Waypoint = tuple[float, float]


class DispatchRoute(BaseModel):
    """Outcome of assigning one unit to one incident.

    Preview routes carry a synthesized ``preview-<unit>`` ID and are never
    persisted; confirmed routes carry the backend dispatch ID.
    """

    id: str | None = None
    incident_id: str
    unit_id: str
    coordinates: list[Waypoint] = Field(
        default_factory=list, description="Ordered (lat, lng) waypoints"
    )
    eta: int | None = Field(None, ge=0, description="ETA in minutes")
    is_preview: bool = False

    @field_validator("coordinates")
    @classmethod
    def validate_coordinates(cls, v):
        """Waypoints must be finite and either absent or at least two."""
        for lat, lng in v:
            if not (math.isfinite(lat) and math.isfinite(lng)):
                raise ValueError(f"Non-finite waypoint: ({lat}, {lng})")
        if len(v) == 1:
            raise ValueError("A route needs at least two waypoints")
        return v


class NearbyUnit(BaseModel):
    """A unit returned by the proximity search, ranked by distance."""

    id: str
    label: str
    type: str
    distance_km: float = Field(..., ge=0)
    eta_minutes: int = Field(..., ge=0)


class ChangeEventType(str, Enum):
    """Kind of row change delivered by the change feed."""

    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class ChangeEvent(BaseModel):
    """A single row change notification."""

    event_type: ChangeEventType
    table: str | None = None
    new: dict[str, Any] = Field(default_factory=dict)
    old: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "ChangeEvent":
        """Build an event from either the realtime channel payload
        (``eventType``/``new``/``old``) or the database webhook payload
        (``type``/``record``/``old_record``).
        """
        event_type = payload.get("eventType") or payload.get("type")
        new = payload.get("new", payload.get("record"))
        old = payload.get("old", payload.get("old_record"))
        return cls(
            event_type=str(event_type).upper() if event_type else event_type,
            table=payload.get("table"),
            new=new or {},
            old=old or {},
        )


class DispatchPhase(str, Enum):
    """Phase of the dispatch workflow."""

    IDLE = "idle"
    PREVIEWING = "previewing"
    PREVIEWED = "previewed"
    COMMITTING = "committing"


class DispatchState(BaseModel):
    """Transient state of the current dispatch attempt."""

    phase: DispatchPhase = DispatchPhase.IDLE
    incident_id: str | None = None
    unit_ids: list[str] = Field(default_factory=list)
    error: str | None = None


class IncidentImage(BaseModel):
    """An image attached to an incident report."""

    filename: str = Field(..., min_length=1)
    content_type: str
    content: bytes

    @property
    def size(self) -> int:
        return len(self.content)


class ReportIncidentInput(BaseModel):
    """Input for reporting a new incident."""

    lat: float = Field(..., ge=-90, le=90, allow_inf_nan=False)
    lng: float = Field(..., ge=-180, le=180, allow_inf_nan=False)
    title: str | None = None
    description: str = Field(..., min_length=1)
    type: IncidentType
    severity: Severity
    address: str | None = None
    reported_by_name: str = "Anonymous"
    user_id: str | None = None
    image: IncidentImage | None = None
