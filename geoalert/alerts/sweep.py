"""
sweep.py — Expiry sweep: reconcile the status cache and purge old records.

    1. expired = AlertStore.find_expired_active(now)
    2. AlertStore.mark_expired(ids)
    3. NotificationLedger.purge_terminal(now − retention)

Alerts are only ever marked expired here, never deleted. Running the sweep
twice in a row changes nothing the second time.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from geoalert.alerts.models import ensure_utc, utc_now
from geoalert.core.config import settings
from geoalert.storage.base import AlertStore, NotificationLedger, RetryConfig, call_with_retry

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    expired_alerts: int = 0
    purged_notifications: int = 0
    ran_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "expired_alerts": self.expired_alerts,
            "purged_notifications": self.purged_notifications,
            "ran_at": self.ran_at.isoformat() if self.ran_at else None,
        }


async def sweep_expired(
    alerts: AlertStore,
    ledger: NotificationLedger,
    now: Optional[datetime] = None,
    *,
    retention_days: Optional[int] = None,
    retry: Optional[RetryConfig] = None,
) -> SweepReport:
    now = ensure_utc(now) if now else utc_now()
    retention = timedelta(
        days=settings.NOTIFICATION_RETENTION_DAYS if retention_days is None else retention_days
    )
    retry = retry or RetryConfig()

    expired = await call_with_retry(alerts.find_expired_active, now, config=retry)
    changed = 0
    if expired:
        changed = await call_with_retry(
            alerts.mark_expired, [a.id for a in expired], config=retry,
        )

    purged = await call_with_retry(ledger.purge_terminal, now - retention, config=retry)

    report = SweepReport(expired_alerts=changed, purged_notifications=purged, ran_at=now)
    logger.info(
        "Expiry sweep: %d alerts expired, %d notifications purged",
        changed, purged,
    )
    return report
