"""
base.py — Store contracts shared by the in-memory and SQL backends.

Every mutation of alerts, users or notification records goes through these
interfaces so uniqueness and state-machine invariants are enforced in one
place per backend:

    AlertStore          one row per external_id, race-safe upsert
    UserStore           geo-radius lookup of active users
    NotificationLedger  at most one non-terminal record per (user, alert)

A ``StoreBundle`` groups the three behind one explicitly opened/closed
handle; the application lifespan owns it.
"""

from __future__ import annotations

import abc
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, TypeVar

from geoalert.alerts.models import (
    Alert,
    AlertFilters,
    NotificationPriority,
    NotificationRecord,
    NotificationStatus,
    NotificationType,
    PushSubscription,
    User,
)
from geoalert.core.config import settings
from geoalert.core.errors import TransientIOError
from geoalert.spatial.geo_math import Geography, GeoPoint

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ═══════════════════════════════════════════════════════════════════════════
# Upsert result
# ═══════════════════════════════════════════════════════════════════════════

class UpsertOutcome(str, Enum):
    CREATED   = "created"
    UPDATED   = "updated"
    UNCHANGED = "unchanged"


@dataclass
class UpsertResult:
    alert: Alert
    outcome: UpsertOutcome

    @property
    def changed(self) -> bool:
        return self.outcome != UpsertOutcome.UNCHANGED


def merge_alert(existing: Alert, incoming: Alert, now: datetime) -> Tuple[Alert, UpsertOutcome]:
    """
    Replace the mutable fields of ``existing`` with ``incoming``'s.

    Identity, external id, creator, creation time and statistics are kept.
    Identical content is a no-op and leaves ``updated_at`` untouched.
    """
    new_content = incoming.content()
    if existing.content() == new_content:
        return existing, UpsertOutcome.UNCHANGED

    merged = Alert(
        id=existing.id,
        external_id=existing.external_id,
        created_by=existing.created_by,
        created_at=existing.created_at,
        statistics=existing.statistics,
        updated_at=max(now, existing.created_at),
        **new_content,
    )
    return merged, UpsertOutcome.UPDATED


# ═══════════════════════════════════════════════════════════════════════════
# Transient I/O retry
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class RetryConfig:
    """Retry parameters for store calls that raise TransientIOError."""
    max_retries: int = settings.STORE_MAX_RETRIES
    backoff_base_seconds: float = settings.STORE_RETRY_BACKOFF_SECONDS
    backoff_type: str = "exponential"  # "exponential" or "linear"
    max_delay_seconds: float = 30.0


def compute_backoff(config: RetryConfig, attempt: int) -> float:
    """
    Delay before the next retry.

    Parameters
    ----------
    config : RetryConfig
    attempt : int
        Attempt that just failed (1-based).
    """
    if config.backoff_type == "exponential":
        delay = config.backoff_base_seconds * (2 ** (attempt - 1))
    else:  # linear
        delay = config.backoff_base_seconds * attempt
    return min(delay, config.max_delay_seconds)


async def call_with_retry(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    config: Optional[RetryConfig] = None,
    **kwargs: Any,
) -> T:
    """Await ``func``; retry TransientIOError up to ``config.max_retries`` times."""
    config = config or RetryConfig()
    attempt = 0
    while True:
        attempt += 1
        try:
            return await func(*args, **kwargs)
        except TransientIOError as exc:
            if attempt > config.max_retries:
                raise
            delay = compute_backoff(config, attempt)
            logger.warning(
                "Transient store error (attempt %d/%d), retrying in %.2fs: %s",
                attempt, config.max_retries + 1, delay, exc.message,
            )
            await asyncio.sleep(delay)


# ═══════════════════════════════════════════════════════════════════════════
# Store contracts
# ═══════════════════════════════════════════════════════════════════════════

class AlertStore(abc.ABC):
    """Persisted alerts: geo-radius, validity and external-id queries."""

    @abc.abstractmethod
    async def upsert_by_external_id(self, alert: Alert) -> UpsertResult:
        """Insert, merge-update or no-op on ``alert.external_id``."""

    @abc.abstractmethod
    async def insert(self, alert: Alert) -> Alert:
        """Plain insert (admin-created alerts)."""

    @abc.abstractmethod
    async def get(self, alert_id: str) -> Optional[Alert]:
        ...

    @abc.abstractmethod
    async def get_by_external_id(self, external_id: str) -> Optional[Alert]:
        ...

    @abc.abstractmethod
    async def delete(self, alert_id: str) -> bool:
        """Hard delete; only explicit admin action calls this."""

    @abc.abstractmethod
    async def find_active_near(
        self,
        center: Geography,
        radius_km: float,
        filters: Optional[AlertFilters] = None,
        now: Optional[datetime] = None,
    ) -> List[Alert]:
        """Public alerts in the disc and active at ``now``, ranked."""

    @abc.abstractmethod
    async def find_expired_active(self, as_of: datetime) -> List[Alert]:
        """status=active but valid_until < as_of."""

    @abc.abstractmethod
    async def mark_expired(self, alert_ids: Sequence[str]) -> int:
        """Set status=expired; returns how many rows actually changed."""

    @abc.abstractmethod
    async def increment_statistic(self, alert_id: str, name: str) -> Alert:
        ...

    @abc.abstractmethod
    async def stats(self, now: datetime) -> Dict[str, Any]:
        ...

    async def ping(self) -> None:
        """Raise when the backend is unreachable."""


class UserStore(abc.ABC):
    """Persisted users: geo-radius lookup plus preference/subscription CRUD."""

    @abc.abstractmethod
    async def add(self, user: User) -> User:
        ...

    @abc.abstractmethod
    async def get(self, user_id: str) -> Optional[User]:
        ...

    @abc.abstractmethod
    async def find_active_near(
        self, center: Geography, radius_km: Optional[float] = None,
    ) -> List[User]:
        """
        Active users with a location inside the disc.

        With ``radius_km=None`` each user's own ``alert_radius_km`` applies.
        """

    @abc.abstractmethod
    async def update_subscription(
        self, user_id: str, subscription: Optional[PushSubscription],
    ) -> User:
        ...

    @abc.abstractmethod
    async def update_preferences(self, user_id: str, **changes: Any) -> User:
        ...


class NotificationLedger(abc.ABC):
    """
    Persisted notification records and their state machine.

    ``create`` is atomic with the duplicate check: a second create for a
    (user, alert) pair with a non-terminal record raises
    DuplicatePendingError carrying the existing record.

    A new record is leased to its creator for ``lease_seconds``. Another
    run may take a record over only through ``claim``, which checks
    resumability and renews the lease in the same atomic step.
    """

    @abc.abstractmethod
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
        ...

    @abc.abstractmethod
    async def get(self, record_id: str) -> Optional[NotificationRecord]:
        ...

    @abc.abstractmethod
    async def find_open(self, user_id: str, alert_id: str) -> Optional[NotificationRecord]:
        """The non-terminal record for a pair, if any."""

    @abc.abstractmethod
    async def _apply(
        self, record_id: str, mutate: Callable[[NotificationRecord], None],
    ) -> NotificationRecord:
        """Load, mutate via a state-machine method, persist, return."""

    async def mark_sent(self, record_id: str, now: Optional[datetime] = None) -> NotificationRecord:
        return await self._apply(record_id, lambda r: r.mark_sent(now))

    async def mark_delivered(self, record_id: str, now: Optional[datetime] = None) -> NotificationRecord:
        return await self._apply(record_id, lambda r: r.mark_delivered(now))

    async def mark_failed(
        self, record_id: str, reason: str, now: Optional[datetime] = None,
    ) -> NotificationRecord:
        return await self._apply(record_id, lambda r: r.mark_failed(reason, now))

    async def mark_read(self, record_id: str, now: Optional[datetime] = None) -> NotificationRecord:
        return await self._apply(record_id, lambda r: r.mark_read(now))

    async def reopen(
        self, record_id: str, now: Optional[datetime] = None, lease_seconds: Optional[float] = None,
    ) -> NotificationRecord:
        return await self._apply(record_id, lambda r: r.reopen(now, lease_seconds))

    async def claim(
        self, record_id: str, lease_seconds: Optional[float] = None, now: Optional[datetime] = None,
    ) -> NotificationRecord:
        """
        Take over a resumable record for this run.

        Raises InvalidTransitionError when the record is no longer
        resumable, e.g. another run claimed it first.
        """
        return await self._apply(record_id, lambda r: r.claim(now, lease_seconds))

    async def release(self, record_id: str, now: Optional[datetime] = None) -> NotificationRecord:
        return await self._apply(record_id, lambda r: r.release(now))

    async def record_channel_result(
        self, record_id: str, channel: str, outcome: Dict[str, Any],
    ) -> NotificationRecord:
        return await self._apply(record_id, lambda r: r.record_channel_result(channel, outcome))

    @abc.abstractmethod
    async def list_for_user(
        self, user_id: str, status: Optional[NotificationStatus] = None, limit: int = 50,
    ) -> List[NotificationRecord]:
        ...

    @abc.abstractmethod
    async def mark_all_read(self, user_id: str, now: Optional[datetime] = None) -> int:
        ...

    @abc.abstractmethod
    async def purge_terminal(self, older_than: datetime) -> int:
        """Delete terminal records created before ``older_than``."""

    @abc.abstractmethod
    async def stats(self, now: datetime) -> Dict[str, Any]:
        ...


# ═══════════════════════════════════════════════════════════════════════════
# Bundle — the explicit store handle
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class StoreBundle:
    alerts: AlertStore
    users: UserStore
    notifications: NotificationLedger
    backend: str = "memory"
    _on_open: Optional[Callable[[], Awaitable[None]]] = field(default=None, repr=False)
    _on_close: Optional[Callable[[], Awaitable[None]]] = field(default=None, repr=False)

    async def open(self) -> None:
        if self._on_open is not None:
            await self._on_open()
        logger.info("Stores opened (backend=%s)", self.backend)

    async def close(self) -> None:
        if self._on_close is not None:
            await self._on_close()
        logger.info("Stores closed (backend=%s)", self.backend)

    async def ping(self) -> None:
        await self.alerts.ping()


def build_store_bundle(backend: Optional[str] = None, database_url: Optional[str] = None) -> StoreBundle:
    """Construct (not open) the configured store backend."""
    backend = (backend or settings.STORE_BACKEND).lower()
    if backend == "memory":
        from geoalert.storage.memory import create_memory_stores
        return create_memory_stores()
    if backend == "sql":
        from geoalert.storage.sql import create_sql_stores
        return create_sql_stores(database_url)
    raise ValueError(f"Unknown STORE_BACKEND: {backend!r}")
