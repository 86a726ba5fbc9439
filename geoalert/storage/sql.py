"""
sql.py — SQLAlchemy 2.0 async store backend (PostgreSQL via asyncpg,
SQLite via aiosqlite).

═══════════════════════════════════════════════════════════════════════════
INVARIANTS ENFORCED BY THE SCHEMA
═══════════════════════════════════════════════════════════════════════════

    alerts.external_id             UNIQUE (NULLs allowed)
    notifications (user, alert)    UNIQUE WHERE the record is non-terminal
                                   (partial index; terminal = read, or
                                   failed with attempts ≥ max_attempts)

An insert that loses a race on either index surfaces as IntegrityError:
the alert upsert retries as an update, the ledger raises
DuplicatePendingError with the winning record.

═══════════════════════════════════════════════════════════════════════════
GEO QUERIES
═══════════════════════════════════════════════════════════════════════════

No spatial extension is assumed. A lat/lon bounding box narrows rows in
SQL, then the exact Haversine test runs in Python. Polygon rows bypass the
box so that the radius test can reject them loudly.
"""

from __future__ import annotations

import functools
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence

from sqlalchemy import (
    JSON,
    Boolean,
    Float,
    Index,
    Integer,
    String,
    Text,
    and_,
    delete,
    func,
    not_,
    or_,
    select,
    update,
)
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.orm import Mapped, mapped_column

from geoalert.alerts.models import (
    STATISTIC_NAMES,
    Alert,
    AlertFilters,
    AlertStatistics,
    AlertStatus,
    NotificationPriority,
    NotificationRecord,
    NotificationStatus,
    NotificationType,
    PushSubscription,
    User,
    UserPreferences,
    lease_until,
    utc_now,
)
from geoalert.core.config import settings
from geoalert.core.database import Base, Database, UTCDateTime
from geoalert.core.errors import (
    DuplicatePendingError,
    NotFoundError,
    TransientIOError,
    ValidationError,
)
from geoalert.spatial.geo_math import (
    Geography,
    GeoPoint,
    bounding_box,
    distance_km,
    geography_from_dict,
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
from geoalert.storage.memory import apply_preference_changes, summarise_notifications

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# ORM rows
# ═══════════════════════════════════════════════════════════════════════════

class AlertRow(Base):
    __tablename__ = "alerts"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    external_id: Mapped[Optional[str]] = mapped_column(String(255), unique=True, nullable=True)
    title: Mapped[str] = mapped_column(String(200))
    description: Mapped[str] = mapped_column(Text)
    type: Mapped[str] = mapped_column(String(32), index=True)
    severity: Mapped[str] = mapped_column(String(16))
    severity_rank: Mapped[int] = mapped_column(Integer, index=True)

    geo_kind: Mapped[str] = mapped_column(String(16), default="Point")
    lon: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    lat: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    polygon: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)
    radius_km: Mapped[float] = mapped_column(Float)

    valid_from: Mapped[datetime] = mapped_column(UTCDateTime, index=True)
    valid_until: Mapped[datetime] = mapped_column(UTCDateTime, index=True)
    status: Mapped[str] = mapped_column(String(16), index=True)
    is_public: Mapped[bool] = mapped_column(Boolean, default=True)
    created_by: Mapped[str] = mapped_column(String(64))
    updated_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    address: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    city: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    state: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    country: Mapped[str] = mapped_column(String(100), default="India")
    source: Mapped[str] = mapped_column(String(16), default="manual")
    confidence: Mapped[float] = mapped_column(Float, default=1.0)
    verified: Mapped[bool] = mapped_column(Boolean, default=False)
    tags: Mapped[Any] = mapped_column(JSON, default=list)
    weather_data: Mapped[Any] = mapped_column(JSON, default=dict)
    safety_instructions: Mapped[Any] = mapped_column(JSON, default=list)
    emergency_contacts: Mapped[Any] = mapped_column(JSON, default=list)

    views: Mapped[int] = mapped_column(Integer, default=0)
    shares: Mapped[int] = mapped_column(Integer, default=0)
    acknowledgments: Mapped[int] = mapped_column(Integer, default=0)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, index=True)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime)

    __table_args__ = (Index("ix_alerts_lat_lon", "lat", "lon"),)


class UserRow(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    email: Mapped[str] = mapped_column(String(255), unique=True)
    name: Mapped[str] = mapped_column(String(100))
    lon: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    lat: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    role: Mapped[str] = mapped_column(String(16), default="user")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    email_notifications: Mapped[bool] = mapped_column(Boolean, default=True)
    push_notifications: Mapped[bool] = mapped_column(Boolean, default=True)
    alert_radius_km: Mapped[float] = mapped_column(Float)
    push_subscription: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime)


class NotificationRow(Base):
    __tablename__ = "notifications"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(32), index=True)
    alert_id: Mapped[str] = mapped_column(String(32), index=True)
    type: Mapped[str] = mapped_column(String(16))
    title: Mapped[str] = mapped_column(String(200))
    message: Mapped[str] = mapped_column(String(500))
    status: Mapped[str] = mapped_column(String(16), index=True)
    priority: Mapped[str] = mapped_column(String(16))
    delivery_attempts: Mapped[int] = mapped_column(Integer, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, index=True)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime)
    sent_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    read_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    channel_results: Mapped[Any] = mapped_column(JSON, default=dict)
    lease_expires_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)


_TERMINAL = or_(
    NotificationRow.status == NotificationStatus.READ.value,
    and_(
        NotificationRow.status == NotificationStatus.FAILED.value,
        NotificationRow.delivery_attempts >= NotificationRow.max_attempts,
    ),
)
_OPEN = not_(_TERMINAL)

Index(
    "uq_notifications_open_pair",
    NotificationRow.user_id,
    NotificationRow.alert_id,
    unique=True,
    sqlite_where=_OPEN,
    postgresql_where=_OPEN,
)


# ═══════════════════════════════════════════════════════════════════════════
# Row ↔ model mapping
# ═══════════════════════════════════════════════════════════════════════════

def _write_alert(alert: Alert, row: AlertRow) -> AlertRow:
    row.id = alert.id
    row.external_id = alert.external_id
    row.title = alert.title
    row.description = alert.description
    row.type = alert.type.value
    row.severity = alert.severity.label
    row.severity_rank = int(alert.severity)
    if isinstance(alert.location, GeoPoint):
        row.geo_kind, row.lon, row.lat, row.polygon = "Point", alert.location.lon, alert.location.lat, None
    else:
        row.geo_kind, row.lon, row.lat = "Polygon", None, None
        row.polygon = alert.location.to_dict()["coordinates"]
    row.radius_km = alert.radius_km
    row.valid_from = alert.valid_from
    row.valid_until = alert.valid_until
    row.status = alert.status.value
    row.is_public = alert.is_public
    row.created_by = alert.created_by
    row.updated_by = alert.updated_by
    row.address = alert.address
    row.city = alert.city
    row.state = alert.state
    row.country = alert.country
    row.source = alert.source.value
    row.confidence = alert.confidence
    row.verified = alert.verified
    row.tags = list(alert.tags)
    row.weather_data = dict(alert.weather_data)
    row.safety_instructions = list(alert.safety_instructions)
    row.emergency_contacts = list(alert.emergency_contacts)
    row.views = alert.statistics.views
    row.shares = alert.statistics.shares
    row.acknowledgments = alert.statistics.acknowledgments
    row.created_at = alert.created_at
    row.updated_at = alert.updated_at
    return row


def _read_alert(row: AlertRow) -> Alert:
    if row.geo_kind == "Polygon":
        location: Geography = geography_from_dict({"type": "Polygon", "coordinates": row.polygon})
    else:
        location = GeoPoint(lon=row.lon, lat=row.lat)
    return Alert(
        id=row.id,
        external_id=row.external_id,
        title=row.title,
        description=row.description,
        type=row.type,
        severity=row.severity,
        location=location,
        radius_km=row.radius_km,
        valid_from=row.valid_from,
        valid_until=row.valid_until,
        status=row.status,
        is_public=row.is_public,
        created_by=row.created_by,
        updated_by=row.updated_by,
        address=row.address,
        city=row.city,
        state=row.state,
        country=row.country,
        source=row.source,
        confidence=row.confidence,
        verified=row.verified,
        tags=list(row.tags or []),
        weather_data=dict(row.weather_data or {}),
        safety_instructions=list(row.safety_instructions or []),
        emergency_contacts=list(row.emergency_contacts or []),
        statistics=AlertStatistics(row.views, row.shares, row.acknowledgments),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _write_user(user: User, row: UserRow) -> UserRow:
    row.id = user.id
    row.email = user.email
    row.name = user.name
    row.lon = user.location.lon if user.location else None
    row.lat = user.location.lat if user.location else None
    row.role = user.role.value
    row.is_active = user.is_active
    row.email_notifications = user.preferences.email_notifications
    row.push_notifications = user.preferences.push_notifications
    row.alert_radius_km = user.preferences.alert_radius_km
    row.push_subscription = user.push_subscription.to_dict() if user.push_subscription else None
    row.created_at = user.created_at
    return row


def _read_user(row: UserRow) -> User:
    return User(
        id=row.id,
        email=row.email,
        name=row.name,
        location=GeoPoint(lon=row.lon, lat=row.lat) if row.lat is not None else None,
        role=row.role,
        is_active=row.is_active,
        preferences=UserPreferences(
            email_notifications=row.email_notifications,
            push_notifications=row.push_notifications,
            alert_radius_km=row.alert_radius_km,
        ),
        push_subscription=(
            PushSubscription.from_dict(row.push_subscription) if row.push_subscription else None
        ),
        created_at=row.created_at,
    )


_RECORD_COLUMNS = (
    "id", "user_id", "alert_id", "title", "message", "delivery_attempts",
    "max_attempts", "created_at", "updated_at", "sent_at", "delivered_at",
    "read_at", "error_message", "lease_expires_at",
)


def _write_record(record: NotificationRecord, row: NotificationRow) -> NotificationRow:
    for name in _RECORD_COLUMNS:
        setattr(row, name, getattr(record, name))
    row.type = record.type.value
    row.status = record.status.value
    row.priority = record.priority.value
    row.channel_results = dict(record.channel_results)
    return row


def _read_record(row: NotificationRow) -> NotificationRecord:
    kwargs = {name: getattr(row, name) for name in _RECORD_COLUMNS}
    return NotificationRecord(
        type=row.type,
        status=row.status,
        priority=row.priority,
        channel_results=dict(row.channel_results or {}),
        **kwargs,
    )


# ═══════════════════════════════════════════════════════════════════════════
# Error translation
# ═══════════════════════════════════════════════════════════════════════════

def _translate_io_errors(func: Callable) -> Callable:
    """Surface connection-level database failures as TransientIOError."""

    @functools.wraps(func)
    async def wrapper(self, *args, **kwargs):
        try:
            return await func(self, *args, **kwargs)
        except IntegrityError:
            raise
        except OperationalError as exc:
            raise TransientIOError("database", str(exc.orig or exc)) from exc
        except DBAPIError as exc:
            if exc.connection_invalidated:
                raise TransientIOError("database", "connection lost") from exc
            raise

    return wrapper


# ═══════════════════════════════════════════════════════════════════════════
# Alerts
# ═══════════════════════════════════════════════════════════════════════════

class SqlAlertStore(AlertStore):

    def __init__(self, db: Database) -> None:
        self._db = db

    @_translate_io_errors
    async def insert(self, alert: Alert) -> Alert:
        try:
            async with self._db.session() as session:
                session.add(_write_alert(alert, AlertRow()))
        except IntegrityError:
            raise ValidationError(
                "Alert id or external_id already exists",
                field="external_id", external_id=alert.external_id,
            ) from None
        return alert

    @_translate_io_errors
    async def upsert_by_external_id(self, alert: Alert) -> UpsertResult:
        if alert.external_id is None:
            return UpsertResult(await self.insert(alert), UpsertOutcome.CREATED)

        for attempt in (1, 2):
            try:
                async with self._db.session() as session:
                    row = await session.scalar(
                        select(AlertRow)
                        .where(AlertRow.external_id == alert.external_id)
                        .with_for_update()
                    )
                    if row is None:
                        session.add(_write_alert(alert, AlertRow()))
                        await session.flush()
                        result = UpsertResult(alert, UpsertOutcome.CREATED)
                    else:
                        merged, outcome = merge_alert(_read_alert(row), alert, utc_now())
                        if outcome == UpsertOutcome.UPDATED:
                            _write_alert(merged, row)
                        result = UpsertResult(merged, outcome)
                return result
            except IntegrityError:
                logger.info(
                    "Concurrent insert for external_id=%s, retrying as update (attempt %d)",
                    alert.external_id, attempt,
                    extra={"external_id": alert.external_id},
                )
        raise TransientIOError(
            "database", "external-id upsert did not converge", external_id=alert.external_id,
        )

    @_translate_io_errors
    async def get(self, alert_id: str) -> Optional[Alert]:
        async with self._db.session() as session:
            row = await session.get(AlertRow, alert_id)
            return _read_alert(row) if row else None

    @_translate_io_errors
    async def get_by_external_id(self, external_id: str) -> Optional[Alert]:
        async with self._db.session() as session:
            row = await session.scalar(select(AlertRow).where(AlertRow.external_id == external_id))
            return _read_alert(row) if row else None

    @_translate_io_errors
    async def delete(self, alert_id: str) -> bool:
        async with self._db.session() as session:
            result = await session.execute(delete(AlertRow).where(AlertRow.id == alert_id))
            return result.rowcount > 0

    @_translate_io_errors
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
        min_lat, max_lat, min_lon, max_lon = bounding_box(center, max(radius_km, 0.0))

        stmt = (
            select(AlertRow)
            .where(
                AlertRow.is_public.is_(True),
                AlertRow.valid_from <= now,
                AlertRow.valid_until >= now,
                # Polygons pass the box filter so within_radius below raises for
                # them; one live polygon alert fails every query touching it.
                or_(
                    AlertRow.geo_kind == "Polygon",
                    and_(
                        AlertRow.lat.between(min_lat, max_lat),
                        AlertRow.lon.between(min_lon, max_lon),
                    ),
                ),
            )
            .order_by(AlertRow.severity_rank.desc(), AlertRow.created_at.desc())
        )
        if filters.type is not None:
            stmt = stmt.where(AlertRow.type == filters.type.value)
        if filters.severity is not None:
            stmt = stmt.where(AlertRow.severity == filters.severity.label)

        async with self._db.session() as session:
            rows = (await session.scalars(stmt)).all()

        hits: List[Alert] = []
        for row in rows:
            alert = _read_alert(row)
            if within_radius(center, alert.location, radius_km):
                hits.append(alert)
                if len(hits) >= filters.limit:
                    break
        return hits

    @_translate_io_errors
    async def find_expired_active(self, as_of: datetime) -> List[Alert]:
        async with self._db.session() as session:
            rows = (await session.scalars(
                select(AlertRow).where(
                    AlertRow.status == AlertStatus.ACTIVE.value,
                    AlertRow.valid_until < as_of,
                )
            )).all()
            return [_read_alert(r) for r in rows]

    @_translate_io_errors
    async def mark_expired(self, alert_ids: Sequence[str]) -> int:
        if not alert_ids:
            return 0
        async with self._db.session() as session:
            result = await session.execute(
                update(AlertRow)
                .where(
                    AlertRow.id.in_(list(alert_ids)),
                    AlertRow.status != AlertStatus.EXPIRED.value,
                )
                .values(status=AlertStatus.EXPIRED.value, updated_at=utc_now())
            )
            return result.rowcount

    @_translate_io_errors
    async def increment_statistic(self, alert_id: str, name: str) -> Alert:
        if name not in STATISTIC_NAMES:
            raise ValidationError(f"Unknown statistic: {name}", field="name")
        column = getattr(AlertRow, name)
        async with self._db.session() as session:
            result = await session.execute(
                update(AlertRow).where(AlertRow.id == alert_id).values({column: column + 1})
            )
            if result.rowcount == 0:
                raise NotFoundError("Alert", alert_id=alert_id)
            row = await session.get(AlertRow, alert_id, populate_existing=True)
            return _read_alert(row)

    @_translate_io_errors
    async def stats(self, now: datetime) -> Dict[str, Any]:
        async def _grouped(session, column) -> Dict[str, int]:
            rows = await session.execute(select(column, func.count()).group_by(column))
            return {key: count for key, count in rows.all()}

        async with self._db.session() as session:
            total = await session.scalar(select(func.count()).select_from(AlertRow))
            active = await session.scalar(
                select(func.count()).select_from(AlertRow).where(
                    AlertRow.valid_from <= now, AlertRow.valid_until >= now,
                )
            )
            recent = await session.scalar(
                select(func.count()).select_from(AlertRow).where(
                    AlertRow.created_at >= now - timedelta(days=7),
                )
            )
            return {
                "total": total or 0,
                "active": active or 0,
                "by_status": await _grouped(session, AlertRow.status),
                "by_type": await _grouped(session, AlertRow.type),
                "by_severity": await _grouped(session, AlertRow.severity),
                "by_geography": await _grouped(session, AlertRow.geo_kind),
                "recent_7d": recent or 0,
            }

    async def ping(self) -> None:
        try:
            await self._db.ping()
        except (OperationalError, OSError) as exc:
            raise TransientIOError("database", str(exc)) from exc


# ═══════════════════════════════════════════════════════════════════════════
# Users
# ═══════════════════════════════════════════════════════════════════════════

class SqlUserStore(UserStore):

    def __init__(self, db: Database) -> None:
        self._db = db

    @_translate_io_errors
    async def add(self, user: User) -> User:
        try:
            async with self._db.session() as session:
                session.add(_write_user(user, UserRow()))
        except IntegrityError:
            raise ValidationError(f"Email already registered: {user.email}", field="email") from None
        return user

    @_translate_io_errors
    async def get(self, user_id: str) -> Optional[User]:
        async with self._db.session() as session:
            row = await session.get(UserRow, user_id)
            return _read_user(row) if row else None

    @_translate_io_errors
    async def find_active_near(
        self, center: Geography, radius_km: Optional[float] = None,
    ) -> List[User]:
        center = require_point(center)
        stmt = select(UserRow).where(UserRow.is_active.is_(True), UserRow.lat.is_not(None))
        if radius_km is not None:
            min_lat, max_lat, min_lon, max_lon = bounding_box(center, max(radius_km, 0.0))
            stmt = stmt.where(
                UserRow.lat.between(min_lat, max_lat),
                UserRow.lon.between(min_lon, max_lon),
            )

        async with self._db.session() as session:
            rows = (await session.scalars(stmt)).all()

        hits = []
        for row in rows:
            user = _read_user(row)
            radius = radius_km if radius_km is not None else user.preferences.alert_radius_km
            if within_radius(center, user.location, radius):
                hits.append(user)
        hits.sort(key=lambda u: distance_km(center, u.location))
        return hits

    async def _update(self, user_id: str, mutate: Callable[[User], None]) -> User:
        async with self._db.session() as session:
            row = await session.get(UserRow, user_id)
            if row is None:
                raise NotFoundError("User", user_id=user_id)
            user = _read_user(row)
            mutate(user)
            _write_user(user, row)
            return user

    @_translate_io_errors
    async def update_subscription(
        self, user_id: str, subscription: Optional[PushSubscription],
    ) -> User:
        def _set(user: User) -> None:
            user.push_subscription = subscription
        return await self._update(user_id, _set)

    @_translate_io_errors
    async def update_preferences(self, user_id: str, **changes: Any) -> User:
        def _set(user: User) -> None:
            user.preferences = apply_preference_changes(user.preferences, changes)
        return await self._update(user_id, _set)


# ═══════════════════════════════════════════════════════════════════════════
# Notification ledger
# ═══════════════════════════════════════════════════════════════════════════

class SqlNotificationLedger(NotificationLedger):

    def __init__(self, db: Database, max_attempts: Optional[int] = None) -> None:
        self._db = db
        self._max_attempts = max_attempts or settings.NOTIFICATION_MAX_ATTEMPTS

    async def _load_open(self, session, user_id: str, alert_id: str) -> Optional[NotificationRow]:
        return await session.scalar(
            select(NotificationRow).where(
                NotificationRow.user_id == user_id,
                NotificationRow.alert_id == alert_id,
                _OPEN,
            )
        )

    @_translate_io_errors
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
        record = NotificationRecord(
            user_id=user_id, alert_id=alert_id, type=type, title=title,
            message=message, priority=priority, max_attempts=self._max_attempts,
            lease_expires_at=lease_until(utc_now(), lease_seconds),
        )
        try:
            async with self._db.session() as session:
                existing = await self._load_open(session, user_id, alert_id)
                if existing is not None:
                    raise DuplicatePendingError(user_id, alert_id, existing=_read_record(existing))
                session.add(_write_record(record, NotificationRow()))
        except IntegrityError:
            # Lost the race on the partial unique index
            existing = await self.find_open(user_id, alert_id)
            raise DuplicatePendingError(user_id, alert_id, existing=existing) from None
        return record

    @_translate_io_errors
    async def get(self, record_id: str) -> Optional[NotificationRecord]:
        async with self._db.session() as session:
            row = await session.get(NotificationRow, record_id)
            return _read_record(row) if row else None

    @_translate_io_errors
    async def find_open(self, user_id: str, alert_id: str) -> Optional[NotificationRecord]:
        async with self._db.session() as session:
            row = await self._load_open(session, user_id, alert_id)
            return _read_record(row) if row else None

    @_translate_io_errors
    async def _apply(
        self, record_id: str, mutate: Callable[[NotificationRecord], None],
    ) -> NotificationRecord:
        async with self._db.session() as session:
            row = await session.scalar(
                select(NotificationRow).where(NotificationRow.id == record_id).with_for_update()
            )
            if row is None:
                raise NotFoundError("Notification", record_id=record_id)
            record = _read_record(row)
            mutate(record)
            _write_record(record, row)
            return record

    @_translate_io_errors
    async def list_for_user(
        self, user_id: str, status: Optional[NotificationStatus] = None, limit: int = 50,
    ) -> List[NotificationRecord]:
        stmt = (
            select(NotificationRow)
            .where(NotificationRow.user_id == user_id)
            .order_by(NotificationRow.created_at.desc())
            .limit(limit)
        )
        if status is not None:
            stmt = stmt.where(NotificationRow.status == status.value)
        async with self._db.session() as session:
            return [_read_record(r) for r in (await session.scalars(stmt)).all()]

    @_translate_io_errors
    async def mark_all_read(self, user_id: str, now: Optional[datetime] = None) -> int:
        async with self._db.session() as session:
            rows = (await session.scalars(
                select(NotificationRow).where(
                    NotificationRow.user_id == user_id,
                    NotificationRow.status.in_(
                        [NotificationStatus.SENT.value, NotificationStatus.DELIVERED.value]
                    ),
                )
            )).all()
            for row in rows:
                record = _read_record(row)
                record.mark_read(now)
                _write_record(record, row)
            return len(rows)

    @_translate_io_errors
    async def purge_terminal(self, older_than: datetime) -> int:
        async with self._db.session() as session:
            result = await session.execute(
                delete(NotificationRow).where(_TERMINAL, NotificationRow.created_at < older_than)
            )
            purged = result.rowcount
        if purged:
            logger.info("Purged %d terminal notifications", purged)
        return purged

    @_translate_io_errors
    async def stats(self, now: datetime) -> Dict[str, Any]:
        async with self._db.session() as session:
            rows = (await session.scalars(select(NotificationRow))).all()
            return summarise_notifications([_read_record(r) for r in rows], now)


def create_sql_stores(database_url: Optional[str] = None, max_attempts: Optional[int] = None) -> StoreBundle:
    db = Database(database_url)
    return StoreBundle(
        alerts=SqlAlertStore(db),
        users=SqlUserStore(db),
        notifications=SqlNotificationLedger(db, max_attempts=max_attempts),
        backend="sql",
        _on_open=db.init,
        _on_close=db.close,
    )
