"""
FastAPI routes: nearby-alert queries and admin alert management.

Provides endpoints to:
    GET    /api/v1/alerts/nearby            — active alerts around a point (public)
    GET    /api/v1/alerts/nearby/users/{id} — active alerts around a registered user
    POST   /api/v1/alerts                   — create one alert and dispatch it
    POST   /api/v1/alerts/ingest            — validate + upsert a batch of documents
    POST   /api/v1/alerts/{id}/dispatch     — (re-)run dispatch for a stored alert
    POST   /api/v1/alerts/sweep             — expire stale alerts, purge old records
    DELETE /api/v1/alerts/{id}              — remove an alert
    GET    /api/v1/alerts/stats/overview    — alert + notification counters
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Query, status

from geoalert.alerts.alert_service import AlertService
from geoalert.alerts.matching import with_distances
from geoalert.alerts.models import AlertFilters, AlertType
from geoalert.api.deps import get_service, require_admin
from geoalert.api.schemas import (
    DispatchRequest,
    DispatchResponse,
    IngestBatchRequest,
    IngestReportOut,
    NearbyAlertOut,
    NearbyAlertsResponse,
    SeverityName,
    SweepReportOut,
)
from geoalert.core.config import settings
from geoalert.spatial.geo_math import GeoPoint, format_distance

router = APIRouter(prefix="/api/v1/alerts", tags=["alerts"])


# ---------------------------------------------------------------------------
# Public
# ---------------------------------------------------------------------------

@router.get(
    "/nearby",
    response_model=NearbyAlertsResponse,
    summary="Active alerts near a point",
    description=(
        "Public alerts whose validity window contains the current time and whose "
        "location lies within radius_km of (lat, lon). Sorted by severity, then "
        "most recent first."
    ),
)
async def nearby_alerts(
    lat: float = Query(..., ge=-90.0, le=90.0, examples=[19.0760]),
    lon: float = Query(..., ge=-180.0, le=180.0, examples=[72.8777]),
    radius_km: float = Query(
        settings.DEFAULT_USER_ALERT_RADIUS_KM, ge=0.0, le=1000.0, examples=[50.0],
    ),
    type: Optional[AlertType] = Query(None, examples=["flood"]),
    severity: Optional[SeverityName] = Query(None, examples=["high"]),
    limit: int = Query(settings.NEARBY_RESULT_LIMIT, ge=1, le=500),
    service: AlertService = Depends(get_service),
):
    point = GeoPoint(lon=lon, lat=lat)
    filters = AlertFilters(type=type, severity=severity, limit=limit)
    alerts = await service.query_nearby(point, radius_km, filters)

    return NearbyAlertsResponse(
        query={
            "lat": lat,
            "lon": lon,
            "radius_km": radius_km,
            "type": type.value if type else None,
            "severity": severity,
            "limit": limit,
        },
        count=len(alerts),
        alerts=[
            NearbyAlertOut(
                alert=alert.to_dict(),
                distance_km=round(distance, 3),
                distance_display=format_distance(distance),
            )
            for alert, distance in with_distances(point, alerts)
        ],
    )


@router.get(
    "/nearby/users/{user_id}",
    response_model=NearbyAlertsResponse,
    summary="Active alerts around a registered user",
    description=(
        "Same as /nearby, centred on the user's stored location and radius "
        "preference. A user without a location gets an empty list."
    ),
)
async def nearby_alerts_for_user(
    user_id: str,
    type: Optional[AlertType] = Query(None, examples=["flood"]),
    severity: Optional[SeverityName] = Query(None, examples=["high"]),
    limit: int = Query(settings.NEARBY_RESULT_LIMIT, ge=1, le=500),
    _admin: str = Depends(require_admin),
    service: AlertService = Depends(get_service),
):
    filters = AlertFilters(type=type, severity=severity, limit=limit)
    user, alerts = await service.nearby_for_user(user_id, filters)
    point = user.location

    return NearbyAlertsResponse(
        query={
            "user_id": user_id,
            "lat": point.lat if point else None,
            "lon": point.lon if point else None,
            "radius_km": user.preferences.alert_radius_km,
            "type": type.value if type else None,
            "severity": severity,
            "limit": limit,
        },
        count=len(alerts),
        alerts=[
            NearbyAlertOut(
                alert=alert.to_dict(),
                distance_km=round(distance, 3),
                distance_display=format_distance(distance),
            )
            for alert, distance in with_distances(point, alerts)
        ] if point else [],
    )


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------

@router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    summary="Create an alert",
    description="Validate, store and (unless dispatch=false) notify affected users.",
)
async def create_alert(
    payload: Dict[str, Any] = Body(...),
    dispatch: bool = Query(True),
    admin: str = Depends(require_admin),
    service: AlertService = Depends(get_service),
):
    outcome = await service.create_alert(payload, created_by=admin, dispatch=dispatch)
    return {
        "alert": outcome.result.alert.to_dict(),
        "outcome": outcome.result.outcome.value,
        "dispatch": outcome.dispatch.to_dict() if outcome.dispatch else None,
    }


@router.post(
    "/ingest",
    response_model=IngestReportOut,
    summary="Ingest a batch of alert documents",
    description=(
        "Each document is validated and upserted by external id independently; "
        "malformed documents are counted, not fatal."
    ),
)
async def ingest_alerts(
    request: IngestBatchRequest,
    _admin: str = Depends(require_admin),
    service: AlertService = Depends(get_service),
):
    report = await service.ingest_batch(request.alerts, dispatch=request.dispatch)
    return report.to_dict()


@router.post(
    "/sweep",
    response_model=SweepReportOut,
    summary="Run the expiry sweep now",
)
async def sweep(
    _admin: str = Depends(require_admin),
    service: AlertService = Depends(get_service),
):
    report = await service.sweep_expired()
    return report.to_dict()


@router.get(
    "/stats/overview",
    summary="Alert and notification counters",
)
async def stats_overview(
    _admin: str = Depends(require_admin),
    service: AlertService = Depends(get_service),
):
    return await service.stats()


@router.post(
    "/{alert_id}/dispatch",
    response_model=DispatchResponse,
    summary="Dispatch a stored alert",
    description=(
        "Notify every active user inside the alert radius. Users with an open "
        "or finished notification for this alert are skipped; interrupted "
        "deliveries are resumed."
    ),
)
async def dispatch_alert(
    alert_id: str,
    request: Optional[DispatchRequest] = None,
    _admin: str = Depends(require_admin),
    service: AlertService = Depends(get_service),
):
    timeout = request.timeout_seconds if request else None
    summary = await service.dispatch_for_alert(alert_id, timeout=timeout)
    return summary.to_dict()


@router.delete(
    "/{alert_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete an alert",
)
async def delete_alert(
    alert_id: str,
    _admin: str = Depends(require_admin),
    service: AlertService = Depends(get_service),
):
    await service.delete_alert(alert_id)
