"""
FastAPI routes: notification ledger.

    GET /api/v1/notifications/stats            — ledger counters (admin)
    PUT /api/v1/notifications/{id}/delivered    — client confirms delivery (admin)
    PUT /api/v1/notifications/{id}/read         — user acknowledged the alert (admin)

Acknowledgments arrive through the app backend, which relays them with the
admin key; an end user never calls these routes directly.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from geoalert.alerts.alert_service import AlertService
from geoalert.alerts.models import utc_now
from geoalert.api.deps import get_service, require_admin

router = APIRouter(prefix="/api/v1/notifications", tags=["notifications"])


@router.get("/stats", summary="Notification ledger counters")
async def notification_stats(
    _admin: str = Depends(require_admin),
    service: AlertService = Depends(get_service),
):
    return await service.stores.notifications.stats(utc_now())


@router.put("/{record_id}/delivered", summary="Mark a notification delivered")
async def mark_delivered(
    record_id: str,
    _admin: str = Depends(require_admin),
    service: AlertService = Depends(get_service),
):
    record = await service.mark_delivered(record_id)
    return record.to_dict()


@router.put("/{record_id}/read", summary="Mark a notification read")
async def mark_read(
    record_id: str,
    _admin: str = Depends(require_admin),
    service: AlertService = Depends(get_service),
):
    record = await service.acknowledge_notification(record_id)
    return record.to_dict()
