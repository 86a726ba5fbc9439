"""
Pydantic schemas for the alert API and the ingestion document.

Separated from the route handlers so they are reusable across the
codebase (ingestion pipeline, background jobs, tests). Field names are
snake_case; the camelCase names used by upstream feeds are accepted as
aliases.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from geoalert.alerts.models import (
    DESCRIPTION_MAX_LENGTH,
    TITLE_MAX_LENGTH,
    Alert,
    AlertSource,
    AlertStatus,
    AlertType,
    ensure_utc,
)
from geoalert.core.config import settings
from geoalert.spatial.geo_math import Geography, GeoPoint, geography_from_dict


SeverityName = Literal["low", "medium", "high", "critical"]


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------

class LocationIn(BaseModel):
    """
    Alert geography as a flat document.

    Points use ``lon``/``lat``; polygons carry GeoJSON-style ``coordinates``
    (stored, but rejected by radius matching).
    """
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["Point", "Polygon"] = "Point"
    lon: Optional[float] = Field(None, ge=-180.0, le=180.0, examples=[72.8777])
    lat: Optional[float] = Field(None, ge=-90.0, le=90.0, examples=[19.0760])
    coordinates: Optional[List[List[List[float]]]] = None

    @model_validator(mode="after")
    def _check_shape(self) -> "LocationIn":
        if self.type == "Point" and (self.lon is None or self.lat is None):
            raise ValueError("Point location requires lon and lat")
        if self.type == "Polygon" and not self.coordinates:
            raise ValueError("Polygon location requires coordinates")
        return self

    def to_geography(self) -> Geography:
        if self.type == "Point":
            return GeoPoint(lon=self.lon, lat=self.lat)
        return geography_from_dict({"type": "Polygon", "coordinates": self.coordinates})


class AlertIn(BaseModel):
    """An alert document, as posted by admins or produced by ingestion sources."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    external_id: Optional[str] = Field(
        None, alias="externalId", max_length=255,
        examples=["weather_Mumbai_flood_1700000000"],
    )
    title: str = Field(..., min_length=1, max_length=TITLE_MAX_LENGTH)
    description: str = Field(..., min_length=1, max_length=DESCRIPTION_MAX_LENGTH)
    type: AlertType = Field(..., examples=["flood"])
    severity: SeverityName = Field(..., examples=["high"])
    location: LocationIn
    radius_km: float = Field(
        settings.DEFAULT_ALERT_RADIUS_KM, gt=0, le=1000.0, alias="radiusKm",
    )
    valid_from: datetime = Field(..., alias="validFrom")
    valid_until: datetime = Field(..., alias="validUntil")
    status: AlertStatus = AlertStatus.ACTIVE
    is_public: bool = Field(True, alias="isPublic")
    created_by: str = Field("system", alias="createdBy", max_length=64)

    address: Optional[str] = Field(None, max_length=255)
    city: Optional[str] = Field(None, max_length=100)
    state: Optional[str] = Field(None, max_length=100)
    country: str = Field("India", max_length=100)
    source: AlertSource = AlertSource.MANUAL
    confidence: float = Field(1.0, ge=0.0, le=1.0)
    verified: bool = False
    tags: List[str] = Field(default_factory=list)
    weather_data: Dict[str, Any] = Field(default_factory=dict, alias="weatherData")
    safety_instructions: List[str] = Field(default_factory=list, alias="safetyInstructions")
    emergency_contacts: List[Dict[str, Any]] = Field(
        default_factory=list, alias="emergencyContacts",
    )

    @field_validator("valid_from", "valid_until", mode="after")
    @classmethod
    def _as_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @model_validator(mode="after")
    def _check_window(self) -> "AlertIn":
        if self.valid_until <= self.valid_from:
            raise ValueError("valid_until must be after valid_from")
        return self

    def to_alert(self, **overrides: Any) -> Alert:
        fields = self.model_dump(exclude={"location"})
        fields["location"] = self.location.to_geography()
        fields.update(overrides)
        return Alert(**fields)


class IngestBatchRequest(BaseModel):
    alerts: List[Dict[str, Any]] = Field(
        ..., min_length=1, max_length=500,
        description="Raw alert documents; each is validated independently",
    )
    dispatch: bool = Field(True, description="Notify affected users on create/update")


class DispatchRequest(BaseModel):
    timeout_seconds: Optional[float] = Field(None, gt=0, le=600)


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------

class NearbyAlertOut(BaseModel):
    alert: Dict[str, Any]
    distance_km: float = Field(..., description="Great-circle distance from the query point")
    distance_display: str = Field(..., examples=["3.73 km"])


class NearbyAlertsResponse(BaseModel):
    query: Dict[str, Any]
    count: int
    alerts: List[NearbyAlertOut]


class DispatchResponse(BaseModel):
    alert_id: str
    matched: int
    sent: int
    failed: int
    skipped: int
    resumed: int
    errors: int
    cancelled: bool
    reason: Optional[str] = None
    duration_ms: float


class IngestReportOut(BaseModel):
    received: int
    created: int
    updated: int
    unchanged: int
    invalid: int
    failed: int
    notified: int
    source_errors: int = 0
    duration_ms: float = 0.0
    errors: List[Dict[str, Any]] = Field(default_factory=list)


class SweepReportOut(BaseModel):
    expired_alerts: int
    purged_notifications: int
    ran_at: Optional[str]
