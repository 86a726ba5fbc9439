"""
alert_service.py — Inbound contract for the alert dispatch service.

The HTTP layer and the periodic jobs talk to this facade only. It wires the
stores, the match engine, the dispatch coordinator and the ingestion
pipeline together and owns their lifecycle.

═══════════════════════════════════════════════════════════════════════════
FLOW
═══════════════════════════════════════════════════════════════════════════

    ┌─────────────────────┐
    │  Ingestion source   │  weather fetcher / admin POST
    └─────────┬───────────┘
              │
              ▼
    ┌─────────────────────┐
    │  1. Validate +      │  AlertIn schema, upsert by external id
    │     Upsert          │  created / updated / unchanged
    └─────────┬───────────┘
              │  (created or updated only)
              ▼
    ┌─────────────────────┐
    │  2. Match           │  active users within the alert radius
    └─────────┬───────────┘
              │
              ▼
    ┌─────────────────────┐
    │  3. Dispatch        │  one ledger record per (user, alert)
    │                     │  push → email → in-app
    └─────────┬───────────┘
              │
              ▼
    ┌─────────────────────┐
    │  4. Sweep           │  expire stale alerts, purge old records
    └─────────────────────┘
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from geoalert.alerts.channels import EmailNotifier, PushNotifier, create_notifiers
from geoalert.alerts.dispatch import DispatchCoordinator, DispatchSummary
from geoalert.alerts.matching import MatchEngine
from geoalert.alerts.models import (
    Alert,
    AlertFilters,
    NotificationRecord,
    User,
    utc_now,
)
from geoalert.alerts.sweep import SweepReport, sweep_expired
from geoalert.core.config import settings
from geoalert.core.errors import NotFoundError
from geoalert.ingestion.pipeline import (
    IngestionPipeline,
    IngestionSource,
    IngestOutcome,
    IngestReport,
)
from geoalert.spatial.geo_math import GeoPoint
from geoalert.storage.base import RetryConfig, StoreBundle, build_store_bundle, call_with_retry

logger = logging.getLogger(__name__)


class AlertService:
    """
    Facade over the stores, matcher, dispatcher and ingestion pipeline.

    Parameters
    ----------
    stores : StoreBundle
        Opened (or about to be opened via ``start``) store handles.
    push_notifier, email_notifier
        Channel implementations; ``None`` disables the channel.
    sources
        Ingestion sources polled by ``run_ingestion``.
    """

    def __init__(
        self,
        stores: StoreBundle,
        *,
        push_notifier: Optional[PushNotifier] = None,
        email_notifier: Optional[EmailNotifier] = None,
        sources: Optional[Sequence[IngestionSource]] = None,
        retry: Optional[RetryConfig] = None,
        concurrency: Optional[int] = None,
        stale_after_seconds: Optional[float] = None,
    ) -> None:
        self.stores = stores
        self.push_notifier = push_notifier
        self.email_notifier = email_notifier
        self._retry = retry or RetryConfig()
        self.matcher = MatchEngine(stores.alerts, stores.users)
        self.coordinator = DispatchCoordinator(
            self.matcher,
            stores.notifications,
            stores.users,
            push_notifier=push_notifier,
            email_notifier=email_notifier,
            concurrency=concurrency,
            stale_after_seconds=stale_after_seconds,
            retry=self._retry,
        )
        self.pipeline = IngestionPipeline(
            stores.alerts, self.coordinator, sources, retry=self._retry,
        )

    @classmethod
    def from_settings(cls) -> "AlertService":
        """Build the service for the configured backend and providers."""
        from geoalert.ingestion.weather_alerts import WeatherAlertSource

        push, email = create_notifiers()
        return cls(
            build_store_bundle(),
            push_notifier=push,
            email_notifier=email,
            sources=[WeatherAlertSource()],
        )

    # ── Lifecycle ──

    async def start(self) -> None:
        await self.stores.open()
        logger.info("Alert service started (%s store)", self.stores.backend)

    async def stop(self) -> None:
        await self.pipeline.close()
        await self.stores.close()
        logger.info("Alert service stopped")

    # ── Ingestion ──

    async def ingest_alert(self, payload: Dict[str, Any], *, dispatch: bool = True) -> IngestOutcome:
        return await self.pipeline.ingest_alert(payload, dispatch=dispatch)

    async def ingest_batch(
        self, payloads: Sequence[Dict[str, Any]], *, dispatch: bool = True,
    ) -> IngestReport:
        return await self.pipeline.ingest_batch(payloads, dispatch=dispatch)

    async def run_ingestion(self) -> IngestReport:
        return await self.pipeline.run()

    async def create_alert(
        self, payload: Dict[str, Any], created_by: str, *, dispatch: bool = True,
    ) -> IngestOutcome:
        """Admin submission: same path as ingestion, attributed to ``created_by``."""
        return await self.pipeline.ingest_alert(
            payload, dispatch=dispatch, created_by=created_by,
        )

    # ── Alerts ──

    async def get_alert(self, alert_id: str) -> Alert:
        alert = await call_with_retry(self.stores.alerts.get, alert_id, config=self._retry)
        if alert is None:
            raise NotFoundError("Alert", alert_id=alert_id)
        return alert

    async def delete_alert(self, alert_id: str) -> None:
        deleted = await call_with_retry(self.stores.alerts.delete, alert_id, config=self._retry)
        if not deleted:
            raise NotFoundError("Alert", alert_id=alert_id)
        logger.info("Alert %s deleted", alert_id, extra={"alert_id": alert_id})

    async def dispatch_for_alert(
        self, alert_id: str, timeout: Optional[float] = None,
    ) -> DispatchSummary:
        """
        Re-run dispatch for a stored alert.

        Users already holding an open or terminal record are skipped; records
        left pending or failed by an earlier run are resumed.
        """
        alert = await self.get_alert(alert_id)
        if timeout is None:
            timeout = settings.DISPATCH_TIMEOUT_SECONDS
        return await self.coordinator.dispatch(alert, timeout=timeout)

    async def query_nearby(
        self,
        point: GeoPoint,
        radius_km: float,
        filters: Optional[AlertFilters] = None,
        now: Optional[datetime] = None,
    ) -> List[Alert]:
        """Active public alerts within ``radius_km``, most severe first."""
        return await call_with_retry(
            self.matcher.find_alerts_near, point, radius_km, filters, now,
            config=self._retry,
        )

    async def nearby_for_user(
        self, user_id: str, filters: Optional[AlertFilters] = None,
    ) -> Tuple[User, List[Alert]]:
        """The user and the alerts around their stored location and radius."""
        user = await call_with_retry(self.stores.users.get, user_id, config=self._retry)
        if user is None:
            raise NotFoundError("User", user_id=user_id)
        alerts = await call_with_retry(
            self.matcher.find_alerts_for_user, user, filters, config=self._retry,
        )
        return user, alerts

    async def sweep_expired(self, now: Optional[datetime] = None) -> SweepReport:
        return await sweep_expired(
            self.stores.alerts, self.stores.notifications, now, retry=self._retry,
        )

    # ── Users ──

    async def register_user(self, user: User) -> User:
        return await call_with_retry(self.stores.users.add, user, config=self._retry)

    # ── Notifications ──

    async def mark_delivered(self, record_id: str) -> NotificationRecord:
        return await self.stores.notifications.mark_delivered(record_id)

    async def acknowledge_notification(self, record_id: str) -> NotificationRecord:
        """Mark a record read and count the acknowledgment on its alert."""
        record = await self.stores.notifications.mark_read(record_id)
        await self._bump(record.alert_id, "acknowledgments")
        return record

    async def _bump(self, alert_id: str, name: str) -> None:
        try:
            await self.stores.alerts.increment_statistic(alert_id, name)
        except NotFoundError:
            logger.debug("Alert %s gone; %s not counted", alert_id, name)

    # ── Stats ──

    async def stats(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or utc_now()
        return {
            "alerts": await self.stores.alerts.stats(now),
            "notifications": await self.stores.notifications.stats(now),
            "backend": self.stores.backend,
        }
