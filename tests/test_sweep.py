"""
test_sweep.py — Expiry sweep: status reconciliation and retention purge.
"""

from __future__ import annotations

from datetime import timedelta

from geoalert.alerts.models import (
    Alert,
    AlertStatus,
    NotificationRecord,
    NotificationStatus,
    NotificationType,
    utc_now,
)
from geoalert.alerts.sweep import sweep_expired
from geoalert.core.errors import TransientIOError
from geoalert.spatial.geo_math import GeoPoint
from geoalert.storage.memory import MemoryAlertStore, create_memory_stores


def _make_alert(hours_left: float, **overrides) -> Alert:
    now = utc_now()
    fields = dict(
        title="Heavy Rainfall Alert - Mumbai",
        description="Risk of urban flooding.",
        type="flood",
        severity="medium",
        location=GeoPoint(lon=72.8777, lat=19.0760),
        radius_km=25.0,
        valid_from=now - timedelta(hours=6),
        valid_until=now + timedelta(hours=hours_left),
        created_by="system",
    )
    fields.update(overrides)
    return Alert(**fields)


def _make_record(status: NotificationStatus, age_days: int, attempts: int = 1) -> NotificationRecord:
    created = utc_now() - timedelta(days=age_days)
    return NotificationRecord(
        user_id="USR-1",
        alert_id=f"ALR-{status.value}-{age_days}",
        type=NotificationType.PUSH,
        title="Flood Warning",
        message="Heavy rainfall detected.",
        status=status,
        delivery_attempts=attempts,
        max_attempts=3,
        created_at=created,
        updated_at=created,
    )


class TestSweepExpired:

    async def test_expired_alert_marked_once(self, stores, fast_retry):
        stale = await stores.alerts.insert(_make_alert(hours_left=-1))
        live = await stores.alerts.insert(_make_alert(hours_left=3))

        report = await sweep_expired(stores.alerts, stores.notifications, retry=fast_retry)
        assert report.expired_alerts == 1
        assert (await stores.alerts.get(stale.id)).status == AlertStatus.EXPIRED
        assert (await stores.alerts.get(live.id)).status == AlertStatus.ACTIVE

        again = await sweep_expired(stores.alerts, stores.notifications, retry=fast_retry)
        assert again.expired_alerts == 0
        assert again.purged_notifications == 0

    async def test_expired_alerts_are_kept(self, stores, fast_retry):
        stale = await stores.alerts.insert(_make_alert(hours_left=-1))
        await sweep_expired(stores.alerts, stores.notifications, retry=fast_retry)
        assert await stores.alerts.get(stale.id) is not None

    async def test_inactive_alert_left_alone(self, stores, fast_retry):
        paused = await stores.alerts.insert(_make_alert(hours_left=-1, status="inactive"))
        report = await sweep_expired(stores.alerts, stores.notifications, retry=fast_retry)
        assert report.expired_alerts == 0
        assert (await stores.alerts.get(paused.id)).status == AlertStatus.INACTIVE

    async def test_explicit_now(self, stores, fast_retry):
        alert = await stores.alerts.insert(_make_alert(hours_left=2))
        report = await sweep_expired(
            stores.alerts, stores.notifications, utc_now() + timedelta(hours=3), retry=fast_retry,
        )
        assert report.expired_alerts == 1
        assert (await stores.alerts.get(alert.id)).status == AlertStatus.EXPIRED

    async def test_purges_only_old_terminal_records(self, stores, fast_retry, seed_record):
        ledger = stores.notifications
        old_read = _make_record(NotificationStatus.READ, age_days=45)
        old_exhausted = _make_record(NotificationStatus.FAILED, age_days=40, attempts=3)
        old_retryable = _make_record(NotificationStatus.FAILED, age_days=40, attempts=1)
        recent_read = _make_record(NotificationStatus.READ, age_days=5)
        for record in (old_read, old_exhausted, old_retryable, recent_read):
            seed_record(ledger, record)

        report = await sweep_expired(stores.alerts, ledger, retry=fast_retry)

        assert report.purged_notifications == 2
        assert await ledger.get(old_read.id) is None
        assert await ledger.get(old_exhausted.id) is None
        assert await ledger.get(old_retryable.id) is not None
        assert await ledger.get(recent_read.id) is not None

    async def test_retention_override(self, stores, fast_retry, seed_record):
        seed_record(stores.notifications, _make_record(NotificationStatus.READ, age_days=5))
        report = await sweep_expired(
            stores.alerts, stores.notifications, retention_days=1, retry=fast_retry,
        )
        assert report.purged_notifications == 1

    async def test_transient_store_error_retried(self, fast_retry):
        class FlakyAlertStore(MemoryAlertStore):
            failures = 1

            async def find_expired_active(self, as_of):
                if self.failures:
                    self.failures -= 1
                    raise TransientIOError("database", "connection reset")
                return await super().find_expired_active(as_of)

        stores = create_memory_stores()
        stores.alerts = FlakyAlertStore()
        await stores.alerts.insert(_make_alert(hours_left=-1))

        report = await sweep_expired(stores.alerts, stores.notifications, retry=fast_retry)
        assert report.expired_alerts == 1

    def test_report_dict(self):
        from geoalert.alerts.sweep import SweepReport

        now = utc_now()
        assert SweepReport(2, 1, now).to_dict() == {
            "expired_alerts": 2,
            "purged_notifications": 1,
            "ran_at": now.isoformat(),
        }
