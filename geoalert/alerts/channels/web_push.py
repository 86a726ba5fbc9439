"""
web_push.py — Web push notification channel.

Delivery mechanism:
    • Web Push Protocol (RFC 8030) with VAPID authentication via pywebpush
    • Payload: JSON with title, body and {alertId, url} for the service worker

Providers:
    simulation — log and report success (development / tests)
    webpush    — real delivery; the blocking pywebpush call runs in a thread

A 404/410 from the push service means the subscription is gone; the result
carries ``expired=True`` so the caller can drop the binding.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, Optional

from pywebpush import WebPushException, webpush

from geoalert.alerts.channels import NotifierResult
from geoalert.alerts.models import Alert, PushSubscription, Severity
from geoalert.core.config import settings

logger = logging.getLogger(__name__)


def build_push_payload(alert: Alert) -> Dict[str, Any]:
    """Push body for one alert: {title, body, data: {alertId, url}}."""
    return {
        "title": alert.title,
        "body": alert.description[:240],
        "icon": "/icons/disaster-alert.png",
        "tag": alert.id,
        "requireInteraction": alert.severity >= Severity.HIGH,
        "data": {
            "alertId": alert.id,
            "url": f"/alerts/{alert.id}",
            "severity": alert.severity.label,
            "type": alert.type.value,
        },
    }


class WebPushNotifier:
    """Push notifier backed by pywebpush (or a logging simulation)."""

    def __init__(
        self,
        provider: str = "simulation",
        *,
        vapid_private_key: Optional[str] = None,
        vapid_claim_email: str = "mailto:alerts@geoalert.local",
        timeout_seconds: float = 10.0,
    ) -> None:
        if provider not in ("simulation", "webpush"):
            raise ValueError(f"Unknown push provider: {provider}")
        if provider == "webpush" and not vapid_private_key:
            raise ValueError("VAPID_PRIVATE_KEY is required for the webpush provider")
        self.provider = provider
        self._vapid_private_key = vapid_private_key
        self._vapid_claims = {"sub": vapid_claim_email}
        self._timeout = timeout_seconds

    async def send_push(
        self, subscription: PushSubscription, payload: Dict[str, Any],
    ) -> NotifierResult:
        alert_id = payload.get("data", {}).get("alertId")

        if self.provider == "simulation":
            logger.info(
                "[WEB_PUSH] Alert %s → %s...: %s",
                alert_id, subscription.endpoint[:32], payload.get("title"),
                extra={"alert_id": alert_id, "channel": "push"},
            )
            return NotifierResult.success(
                mode="simulated",
                payload_size=len(json.dumps(payload)),
            )

        try:
            response = await asyncio.to_thread(
                webpush,
                subscription_info=subscription.to_dict(),
                data=json.dumps(payload),
                vapid_private_key=self._vapid_private_key,
                vapid_claims=dict(self._vapid_claims),
                timeout=self._timeout,
            )
        except WebPushException as exc:
            status = getattr(getattr(exc, "response", None), "status_code", None)
            if status in (404, 410):
                logger.info("Expired/invalid push subscription: %s", subscription.endpoint)
                return NotifierResult.failure("subscription expired", status=status, expired=True)
            logger.error("WebPushException (%s): %s", status, exc)
            return NotifierResult.failure(str(exc), status=status)

        return NotifierResult.success(
            mode="webpush",
            status=getattr(response, "status_code", None),
        )


def create_push_notifier() -> Optional[WebPushNotifier]:
    if settings.PUSH_PROVIDER == "disabled":
        return None
    return WebPushNotifier(
        settings.PUSH_PROVIDER,
        vapid_private_key=settings.VAPID_PRIVATE_KEY,
        vapid_claim_email=settings.VAPID_CLAIM_EMAIL,
    )
