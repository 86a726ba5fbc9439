"""
memory.py — In-process store backend.

Backs tests and local development. Records are deep-copied on the way in
and out so callers can only change persisted state through the store
methods, exactly as with the SQL backend. A per-store ``asyncio.Lock``
makes check-then-write sequences (external-id upsert, duplicate-pending
check) atomic within the event loop.

Geo queries are a full scan filtered by Haversine distance; fine for
modest volumes.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence

from geoalert.alerts.models import (
    STATISTIC_NAMES,
    Alert,
    AlertFilters,
    AlertStatus,
    NotificationPriority,
    NotificationRecord,
    NotificationStatus,
    NotificationType,
    PushSubscription,
    User,
    UserPreferences,
    lease_until,
    severity_rank_key,
    utc_now,
)
from geoalert.alerts.validity import is_active_at
from geoalert.core.errors import DuplicatePendingError, NotFoundError, ValidationError
from geoalert.spatial.geo_math import (
    Geography,
    distance_km,
    require_point,
    within_radius,
)
from geoalert.storage.base import (
    AlertStore,
    NotificationLedger,
    StoreBundle,
    UpsertOutcome,
    UpsertResult,
    UserStore,
    merge_alert,
)

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Alerts
# ═══════════════════════════════════════════════════════════════════════════

class MemoryAlertStore(AlertStore):

    def __init__(self) -> None:
        self._alerts: Dict[str, Alert] = {}
        self._by_external_id: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    def _insert_locked(self, alert: Alert) -> Alert:
        if alert.id in self._alerts:
            raise ValidationError(f"Alert id already exists: {alert.id}", field="id")
        if alert.external_id is not None and alert.external_id in self._by_external_id:
            raise ValidationError(
                f"external_id already exists: {alert.external_id}", field="external_id",
            )
        stored = copy.deepcopy(alert)
        self._alerts[stored.id] = stored
        if stored.external_id is not None:
            self._by_external_id[stored.external_id] = stored.id
        return copy.deepcopy(stored)

    async def insert(self, alert: Alert) -> Alert:
        async with self._lock:
            return self._insert_locked(alert)

    async def upsert_by_external_id(self, alert: Alert) -> UpsertResult:
        async with self._lock:
            existing_id = (
                self._by_external_id.get(alert.external_id)
                if alert.external_id is not None else None
            )
            if existing_id is None:
                return UpsertResult(self._insert_locked(alert), UpsertOutcome.CREATED)

            merged, outcome = merge_alert(self._alerts[existing_id], alert, utc_now())
            if outcome == UpsertOutcome.UPDATED:
                self._alerts[existing_id] = copy.deepcopy(merged)
            return UpsertResult(copy.deepcopy(merged), outcome)

    async def get(self, alert_id: str) -> Optional[Alert]:
        alert = self._alerts.get(alert_id)
        return copy.deepcopy(alert) if alert else None

    async def get_by_external_id(self, external_id: str) -> Optional[Alert]:
        alert_id = self._by_external_id.get(external_id)
        return await self.get(alert_id) if alert_id else None

    async def delete(self, alert_id: str) -> bool:
        async with self._lock:
            alert = self._alerts.pop(alert_id, None)
            if alert is None:
                return False
            if alert.external_id is not None:
                self._by_external_id.pop(alert.external_id, None)
            return True

    async def find_active_near(
        self,
        center: Geography,
        radius_km: float,
        filters: Optional[AlertFilters] = None,
        now: Optional[datetime] = None,
    ) -> List[Alert]:
        center = require_point(center)
        filters = filters or AlertFilters()
        now = now or utc_now()

        # within_radius raises UnsupportedGeographyError for a live public polygon
        # alert that passes the filters, failing the whole query; /health flags it.
        hits = []
        for alert in self._alerts.values():
            if not alert.is_public or not is_active_at(alert, now):
                continue
            if not filters.matches(alert):
                continue
            if within_radius(center, alert.location, radius_km):
                hits.append(alert)

        hits.sort(key=severity_rank_key)
        return [copy.deepcopy(a) for a in hits[: filters.limit]]

    async def find_expired_active(self, as_of: datetime) -> List[Alert]:
        return [
            copy.deepcopy(a) for a in self._alerts.values()
            if a.status == AlertStatus.ACTIVE and a.valid_until < as_of
        ]

    async def mark_expired(self, alert_ids: Sequence[str]) -> int:
        changed = 0
        now = utc_now()
        async with self._lock:
            for alert_id in alert_ids:
                alert = self._alerts.get(alert_id)
                if alert is None or alert.status == AlertStatus.EXPIRED:
                    continue
                alert.status = AlertStatus.EXPIRED
                alert.updated_at = now
                changed += 1
        return changed

    async def increment_statistic(self, alert_id: str, name: str) -> Alert:
        if name not in STATISTIC_NAMES:
            raise ValidationError(f"Unknown statistic: {name}", field="name")
        async with self._lock:
            alert = self._alerts.get(alert_id)
            if alert is None:
                raise NotFoundError("Alert", alert_id=alert_id)
            setattr(alert.statistics, name, getattr(alert.statistics, name) + 1)
            return copy.deepcopy(alert)

    async def stats(self, now: datetime) -> Dict[str, Any]:
        alerts = list(self._alerts.values())
        week_ago = now - timedelta(days=7)
        return {
            "total": len(alerts),
            "active": sum(1 for a in alerts if is_active_at(a, now)),
            "by_status": dict(Counter(a.status.value for a in alerts)),
            "by_type": dict(Counter(a.type.value for a in alerts)),
            "by_severity": dict(Counter(a.severity.label for a in alerts)),
            "by_geography": dict(Counter(a.location.kind for a in alerts)),
            "recent_7d": sum(1 for a in alerts if a.created_at >= week_ago),
        }


# ═══════════════════════════════════════════════════════════════════════════
# Users
# ═══════════════════════════════════════════════════════════════════════════

_PREFERENCE_FIELDS = ("email_notifications", "push_notifications", "alert_radius_km")


def apply_preference_changes(prefs: UserPreferences, changes: Dict[str, Any]) -> UserPreferences:
    """Validated copy of ``prefs`` with ``changes`` applied."""
    unknown = set(changes) - set(_PREFERENCE_FIELDS)
    if unknown:
        raise ValidationError(f"Unknown preferences: {sorted(unknown)}", field="preferences")
    radius = changes.get("alert_radius_km", prefs.alert_radius_km)
    if radius is None or radius <= 0:
        raise ValidationError("alert_radius_km must be positive", field="alert_radius_km")
    updated = copy.copy(prefs)
    for key, value in changes.items():
        setattr(updated, key, value)
    return updated


class MemoryUserStore(UserStore):

    def __init__(self) -> None:
        self._users: Dict[str, User] = {}
        self._lock = asyncio.Lock()

    async def add(self, user: User) -> User:
        async with self._lock:
            email = user.email.lower()
            if any(u.email.lower() == email for u in self._users.values()):
                raise ValidationError(f"Email already registered: {user.email}", field="email")
            self._users[user.id] = copy.deepcopy(user)
        return copy.deepcopy(user)

    async def get(self, user_id: str) -> Optional[User]:
        user = self._users.get(user_id)
        return copy.deepcopy(user) if user else None

    async def find_active_near(
        self, center: Geography, radius_km: Optional[float] = None,
    ) -> List[User]:
        center = require_point(center)
        hits = []
        for user in self._users.values():
            if not user.is_active or user.location is None:
                continue
            radius = radius_km if radius_km is not None else user.preferences.alert_radius_km
            if within_radius(center, user.location, radius):
                hits.append(user)
        hits.sort(key=lambda u: distance_km(center, u.location))
        return [copy.deepcopy(u) for u in hits]

    async def _update(self, user_id: str, mutate: Callable[[User], None]) -> User:
        async with self._lock:
            user = self._users.get(user_id)
            if user is None:
                raise NotFoundError("User", user_id=user_id)
            mutate(user)
            return copy.deepcopy(user)

    async def update_subscription(
        self, user_id: str, subscription: Optional[PushSubscription],
    ) -> User:
        def _set(user: User) -> None:
            user.push_subscription = subscription
        return await self._update(user_id, _set)

    async def update_preferences(self, user_id: str, **changes: Any) -> User:
        def _set(user: User) -> None:
            user.preferences = apply_preference_changes(user.preferences, changes)
        return await self._update(user_id, _set)


# ═══════════════════════════════════════════════════════════════════════════
# Notification ledger
# ═══════════════════════════════════════════════════════════════════════════

def summarise_notifications(records: List[NotificationRecord], now: datetime) -> Dict[str, Any]:
    day_ago = now - timedelta(hours=24)
    return {
        "total": len(records),
        "by_status": dict(Counter(r.status.value for r in records)),
        "by_type": dict(Counter(r.type.value for r in records)),
        "retryable": sum(1 for r in records if r.can_retry),
        "last_24h": sum(1 for r in records if r.created_at >= day_ago),
    }


class MemoryNotificationLedger(NotificationLedger):

    def __init__(self, max_attempts: Optional[int] = None) -> None:
        self._records: Dict[str, NotificationRecord] = {}
        self._lock = asyncio.Lock()
        self._max_attempts = max_attempts

    def _open_for(self, user_id: str, alert_id: str) -> Optional[NotificationRecord]:
        for record in self._records.values():
            if record.user_id == user_id and record.alert_id == alert_id and not record.is_terminal:
                return record
        return None

    async def create(
        self,
        user_id: str,
        alert_id: str,
        type: NotificationType,
        title: str,
        message: str,
        priority: NotificationPriority = NotificationPriority.MEDIUM,
        lease_seconds: Optional[float] = None,
    ) -> NotificationRecord:
        async with self._lock:
            existing = self._open_for(user_id, alert_id)
            if existing is not None:
                raise DuplicatePendingError(user_id, alert_id, existing=copy.deepcopy(existing))

            kwargs = {}
            if self._max_attempts is not None:
                kwargs["max_attempts"] = self._max_attempts
            record = NotificationRecord(
                user_id=user_id, alert_id=alert_id, type=type,
                title=title, message=message, priority=priority,
                lease_expires_at=lease_until(utc_now(), lease_seconds), **kwargs,
            )
            self._records[record.id] = record
            return copy.deepcopy(record)

    async def get(self, record_id: str) -> Optional[NotificationRecord]:
        record = self._records.get(record_id)
        return copy.deepcopy(record) if record else None

    async def find_open(self, user_id: str, alert_id: str) -> Optional[NotificationRecord]:
        record = self._open_for(user_id, alert_id)
        return copy.deepcopy(record) if record else None

    async def _apply(
        self, record_id: str, mutate: Callable[[NotificationRecord], None],
    ) -> NotificationRecord:
        async with self._lock:
            stored = self._records.get(record_id)
            if stored is None:
                raise NotFoundError("Notification", record_id=record_id)
            working = copy.deepcopy(stored)
            mutate(working)
            self._records[record_id] = working
            return copy.deepcopy(working)

    async def list_for_user(
        self, user_id: str, status: Optional[NotificationStatus] = None, limit: int = 50,
    ) -> List[NotificationRecord]:
        records = [
            r for r in self._records.values()
            if r.user_id == user_id and (status is None or r.status == status)
        ]
        records.sort(key=lambda r: r.created_at, reverse=True)
        return [copy.deepcopy(r) for r in records[:limit]]

    async def mark_all_read(self, user_id: str, now: Optional[datetime] = None) -> int:
        count = 0
        async with self._lock:
            for record in self._records.values():
                if record.user_id == user_id and record.status in (
                    NotificationStatus.SENT, NotificationStatus.DELIVERED,
                ):
                    record.mark_read(now)
                    count += 1
        return count

    async def purge_terminal(self, older_than: datetime) -> int:
        async with self._lock:
            doomed = [
                r.id for r in self._records.values()
                if r.is_terminal and r.created_at < older_than
            ]
            for record_id in doomed:
                del self._records[record_id]
        if doomed:
            logger.info("Purged %d terminal notifications", len(doomed))
        return len(doomed)

    async def stats(self, now: datetime) -> Dict[str, Any]:
        return summarise_notifications(list(self._records.values()), now)


def create_memory_stores(max_attempts: Optional[int] = None) -> StoreBundle:
    return StoreBundle(
        alerts=MemoryAlertStore(),
        users=MemoryUserStore(),
        notifications=MemoryNotificationLedger(max_attempts=max_attempts),
        backend="memory",
    )
