"""
models.py — Shared data structures for the alert matching/dispatch core.

Defines:
    • AlertType / Severity / AlertStatus — alert classification
    • Alert            — a geographically-scoped disaster alert
    • User             — a recipient with location, preferences, push binding
    • NotificationRecord — one (user, alert) delivery ledger entry
    • AlertFilters     — optional filters for nearby queries

═══════════════════════════════════════════════════════════════════════════
SEVERITY → NOTIFICATION PRIORITY
═══════════════════════════════════════════════════════════════════════════

    Alert Severity    Notification Priority
    ──────────────    ─────────────────────
    low               low
    medium            medium
    high              high
    critical          urgent

Severity is an IntEnum so it orders naturally (critical highest); it is
persisted as its lowercase name.

═══════════════════════════════════════════════════════════════════════════
NOTIFICATION STATE MACHINE
═══════════════════════════════════════════════════════════════════════════

    pending ──mark_sent──▶ sent ──mark_delivered──▶ delivered
       │                    │  ╲                       │
       │                    │   ╲──mark_read──▶ read ◀─┘
       └──mark_failed──▶ failed ◀──mark_failed──┘
                          │
                          └──reopen (attempts < max)──▶ pending

    • delivery_attempts increments on sent/failed only
    • terminal: read, or failed with attempts ≥ max_attempts
    • delivered_at ≥ sent_at ≥ created_at
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional, Union

from geoalert.core.config import settings
from geoalert.core.errors import InvalidTransitionError, ValidationError
from geoalert.spatial.geo_math import (
    Geography,
    GeoPoint,
    GeoPolygon,
    geography_from_dict,
)


# ═══════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════

def _parse_enum(enum_cls, value: Any, field_name: str):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        raise ValidationError(
            f"Unknown {field_name}: {value!r}",
            field=field_name,
            allowed=[m.value for m in enum_cls],
        ) from None


class AlertType(str, Enum):
    LANDSLIDE      = "landslide"
    FLOOD          = "flood"
    SEVERE_WEATHER = "severe_weather"
    EVACUATION     = "evacuation"
    OTHER          = "other"


class Severity(IntEnum):
    """Alert severity — integer ordering enables comparison."""
    LOW      = 1
    MEDIUM   = 2
    HIGH     = 3
    CRITICAL = 4

    @property
    def label(self) -> str:
        return self.name.lower()

    @classmethod
    def parse(cls, value: Union["Severity", int, str]) -> "Severity":
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls[value.upper()]
            except KeyError:
                pass
        elif isinstance(value, int) and not isinstance(value, bool):
            try:
                return cls(value)
            except ValueError:
                pass
        raise ValidationError(
            f"Unknown severity: {value!r}",
            field="severity",
            allowed=[m.label for m in cls],
        )


class AlertStatus(str, Enum):
    """Denormalized lifecycle cache; computed validity is canonical."""
    ACTIVE   = "active"
    INACTIVE = "inactive"
    EXPIRED  = "expired"


class AlertSource(str, Enum):
    MANUAL = "manual"
    API    = "api"
    MOCK   = "mock"
    SYSTEM = "system"


class UserRole(str, Enum):
    USER  = "user"
    ADMIN = "admin"


class NotificationType(str, Enum):
    PUSH  = "push"
    EMAIL = "email"
    SMS   = "sms"
    ALERT = "alert"   # in-app only


class NotificationStatus(str, Enum):
    PENDING   = "pending"
    SENT      = "sent"
    DELIVERED = "delivered"
    READ      = "read"
    FAILED    = "failed"


class NotificationPriority(str, Enum):
    LOW    = "low"
    MEDIUM = "medium"
    HIGH   = "high"
    URGENT = "urgent"


PRIORITY_BY_SEVERITY: Dict[Severity, NotificationPriority] = {
    Severity.LOW:      NotificationPriority.LOW,
    Severity.MEDIUM:   NotificationPriority.MEDIUM,
    Severity.HIGH:     NotificationPriority.HIGH,
    Severity.CRITICAL: NotificationPriority.URGENT,
}

STATISTIC_NAMES = ("views", "shares", "acknowledgments")

TITLE_MAX_LENGTH = 200
DESCRIPTION_MAX_LENGTH = 1000
MESSAGE_MAX_LENGTH = 500


# ═══════════════════════════════════════════════════════════════════════════
# Helpers
# ═══════════════════════════════════════════════════════════════════════════

def _generate_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12].upper()}"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Union[datetime, str]) -> datetime:
    """Coerce ISO strings and naive datetimes to aware UTC."""
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            raise ValidationError(f"Invalid timestamp: {value!r}") from None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def lease_until(now: datetime, lease_seconds: Optional[float] = None) -> datetime:
    """End of a dispatch lease taken at ``now``."""
    if lease_seconds is None:
        lease_seconds = settings.DISPATCH_STALE_AFTER_SECONDS
    return now + timedelta(seconds=lease_seconds)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _opt_dt(value: Any) -> Optional[datetime]:
    return ensure_utc(value) if value else None


# ═══════════════════════════════════════════════════════════════════════════
# Alert
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class AlertStatistics:
    views: int = 0
    shares: int = 0
    acknowledgments: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "views": self.views,
            "shares": self.shares,
            "acknowledgments": self.acknowledgments,
        }


@dataclass
class Alert:
    """
    A geographically-scoped disaster alert.

    Attributes
    ----------
    location : GeoPoint | GeoPolygon
        Alert geography. Only points take part in radius matching.
    radius_km : float
        Affected-area disc around ``location``; must be positive.
    valid_from, valid_until : datetime
        Temporal window; ``valid_until`` must be after ``valid_from``.
    status : AlertStatus
        Denormalized cache maintained by the expiry sweep. Queries use
        the computed window, not this field.
    external_id : str | None
        Source identifier used to de-duplicate ingested alerts.
    """
    title: str
    description: str
    type: AlertType
    severity: Severity
    location: Geography
    valid_from: datetime
    valid_until: datetime
    created_by: str
    radius_km: float = settings.DEFAULT_ALERT_RADIUS_KM
    id: str = field(default_factory=lambda: _generate_id("ALR"))
    external_id: Optional[str] = None
    status: AlertStatus = AlertStatus.ACTIVE
    is_public: bool = True
    updated_by: Optional[str] = None

    # Descriptive extras
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    country: str = "India"
    source: AlertSource = AlertSource.MANUAL
    confidence: float = 1.0
    verified: bool = False
    tags: List[str] = field(default_factory=list)
    weather_data: Dict[str, Any] = field(default_factory=dict)
    safety_instructions: List[str] = field(default_factory=list)
    emergency_contacts: List[Dict[str, Any]] = field(default_factory=list)

    statistics: AlertStatistics = field(default_factory=AlertStatistics)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        self.type = _parse_enum(AlertType, self.type, "type")
        self.severity = Severity.parse(self.severity)
        self.status = _parse_enum(AlertStatus, self.status, "status")
        self.source = _parse_enum(AlertSource, self.source, "source")
        self.valid_from = ensure_utc(self.valid_from)
        self.valid_until = ensure_utc(self.valid_until)
        self.created_at = ensure_utc(self.created_at)
        self.updated_at = ensure_utc(self.updated_at)
        self.validate()

    def validate(self) -> None:
        """Reject malformed geography, radius, text or an inverted window."""
        if not isinstance(self.location, (GeoPoint, GeoPolygon)):
            raise ValidationError("Alert location must be a Point or Polygon", field="location")
        if self.radius_km is None or self.radius_km <= 0:
            raise ValidationError(
                f"radius_km must be positive, got {self.radius_km}", field="radius_km",
            )
        if self.valid_until <= self.valid_from:
            raise ValidationError(
                "valid_until must be after valid_from",
                field="valid_until",
                valid_from=self.valid_from.isoformat(),
                valid_until=self.valid_until.isoformat(),
            )
        if not self.title or len(self.title) > TITLE_MAX_LENGTH:
            raise ValidationError(
                f"title must be 1-{TITLE_MAX_LENGTH} characters", field="title",
            )
        if not self.description or len(self.description) > DESCRIPTION_MAX_LENGTH:
            raise ValidationError(
                f"description must be 1-{DESCRIPTION_MAX_LENGTH} characters",
                field="description",
            )
        if not (0.0 <= self.confidence <= 1.0):
            raise ValidationError("confidence must be within [0, 1]", field="confidence")

    @property
    def point(self) -> Optional[GeoPoint]:
        return self.location if isinstance(self.location, GeoPoint) else None

    def content(self) -> Dict[str, Any]:
        """Mutable, merge-relevant fields used to detect no-op upserts."""
        return {name: getattr(self, name) for name in MERGEABLE_FIELDS}

    def to_dict(self) -> Dict[str, Any]:
        """Flat document form (as persisted and served)."""
        return {
            "id": self.id,
            "external_id": self.external_id,
            "title": self.title,
            "description": self.description,
            "type": self.type.value,
            "severity": self.severity.label,
            "location": self.location.to_dict(),
            "radius_km": self.radius_km,
            "valid_from": _iso(self.valid_from),
            "valid_until": _iso(self.valid_until),
            "status": self.status.value,
            "is_public": self.is_public,
            "created_by": self.created_by,
            "updated_by": self.updated_by,
            "address": self.address,
            "city": self.city,
            "state": self.state,
            "country": self.country,
            "source": self.source.value,
            "confidence": self.confidence,
            "verified": self.verified,
            "tags": list(self.tags),
            "weather_data": dict(self.weather_data),
            "safety_instructions": list(self.safety_instructions),
            "emergency_contacts": list(self.emergency_contacts),
            "statistics": self.statistics.to_dict(),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Alert":
        stats = data.get("statistics") or {}
        return cls(
            id=data["id"],
            external_id=data.get("external_id"),
            title=data["title"],
            description=data["description"],
            type=data["type"],
            severity=data["severity"],
            location=geography_from_dict(data["location"]),
            radius_km=data["radius_km"],
            valid_from=data["valid_from"],
            valid_until=data["valid_until"],
            status=data.get("status", AlertStatus.ACTIVE),
            is_public=data.get("is_public", True),
            created_by=data["created_by"],
            updated_by=data.get("updated_by"),
            address=data.get("address"),
            city=data.get("city"),
            state=data.get("state"),
            country=data.get("country", "India"),
            source=data.get("source", AlertSource.MANUAL),
            confidence=data.get("confidence", 1.0),
            verified=data.get("verified", False),
            tags=list(data.get("tags") or []),
            weather_data=dict(data.get("weather_data") or {}),
            safety_instructions=list(data.get("safety_instructions") or []),
            emergency_contacts=list(data.get("emergency_contacts") or []),
            statistics=AlertStatistics(**stats),
            created_at=data.get("created_at") or utc_now(),
            updated_at=data.get("updated_at") or utc_now(),
        )


# Replaced on merge; identity, creator, creation time and counters are kept
MERGEABLE_FIELDS = (
    "title", "description", "type", "severity", "location", "radius_km",
    "valid_from", "valid_until", "status", "is_public", "updated_by",
    "address", "city", "state", "country", "source", "confidence",
    "verified", "tags", "weather_data", "safety_instructions",
    "emergency_contacts",
)


@dataclass
class AlertFilters:
    """Optional filters for nearby-alert queries."""
    type: Optional[AlertType] = None
    severity: Optional[Severity] = None
    limit: int = settings.NEARBY_RESULT_LIMIT

    def __post_init__(self) -> None:
        if self.type is not None:
            self.type = _parse_enum(AlertType, self.type, "type")
        if self.severity is not None:
            self.severity = Severity.parse(self.severity)
        if self.limit <= 0:
            raise ValidationError("limit must be positive", field="limit")

    def matches(self, alert: Alert) -> bool:
        if self.type is not None and alert.type != self.type:
            return False
        if self.severity is not None and alert.severity != self.severity:
            return False
        return True


def severity_rank_key(alert: Alert):
    """Sort key for (severity desc, created_at desc)."""
    return (-int(alert.severity), -alert.created_at.timestamp())


# ═══════════════════════════════════════════════════════════════════════════
# User
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class UserPreferences:
    email_notifications: bool = True
    push_notifications: bool = True
    alert_radius_km: float = settings.DEFAULT_USER_ALERT_RADIUS_KM

    def to_dict(self) -> Dict[str, Any]:
        return {
            "email_notifications": self.email_notifications,
            "push_notifications": self.push_notifications,
            "alert_radius_km": self.alert_radius_km,
        }


@dataclass(frozen=True)
class PushSubscription:
    """Opaque web-push binding (endpoint + VAPID keys)."""
    endpoint: str
    p256dh: str
    auth: str

    def to_dict(self) -> Dict[str, Any]:
        return {"endpoint": self.endpoint, "keys": {"p256dh": self.p256dh, "auth": self.auth}}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PushSubscription":
        keys = data.get("keys") or {}
        return cls(endpoint=data["endpoint"], p256dh=keys["p256dh"], auth=keys["auth"])


@dataclass
class User:
    email: str
    name: str
    location: Optional[GeoPoint] = None
    id: str = field(default_factory=lambda: _generate_id("USR"))
    role: UserRole = UserRole.USER
    is_active: bool = True
    preferences: UserPreferences = field(default_factory=UserPreferences)
    push_subscription: Optional[PushSubscription] = None
    created_at: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        self.role = _parse_enum(UserRole, self.role, "role")
        if self.location is not None and not isinstance(self.location, GeoPoint):
            raise ValidationError("User location must be a point", field="location")

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "location": self.location.to_dict() if self.location else None,
            "role": self.role.value,
            "is_active": self.is_active,
            "preferences": self.preferences.to_dict(),
            "push_subscription": (
                self.push_subscription.to_dict() if self.push_subscription else None
            ),
            "created_at": _iso(self.created_at),
        }


# ═══════════════════════════════════════════════════════════════════════════
# NotificationRecord — ledger entry and its state machine
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class NotificationRecord:
    user_id: str
    alert_id: str
    type: NotificationType
    title: str
    message: str
    priority: NotificationPriority = NotificationPriority.MEDIUM
    id: str = field(default_factory=lambda: _generate_id("NTF"))
    status: NotificationStatus = NotificationStatus.PENDING
    delivery_attempts: int = 0
    max_attempts: int = settings.NOTIFICATION_MAX_ATTEMPTS
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    sent_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    read_at: Optional[datetime] = None
    error_message: Optional[str] = None
    channel_results: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    lease_expires_at: Optional[datetime] = None  # a dispatch run owns the record until then

    def __post_init__(self) -> None:
        self.type = _parse_enum(NotificationType, self.type, "type")
        self.status = _parse_enum(NotificationStatus, self.status, "status")
        self.priority = _parse_enum(NotificationPriority, self.priority, "priority")
        if self.lease_expires_at is not None:
            self.lease_expires_at = ensure_utc(self.lease_expires_at)
        if not self.title or len(self.title) > TITLE_MAX_LENGTH:
            raise ValidationError(
                f"title must be 1-{TITLE_MAX_LENGTH} characters", field="title",
            )
        if not self.message or len(self.message) > MESSAGE_MAX_LENGTH:
            raise ValidationError(
                f"message must be 1-{MESSAGE_MAX_LENGTH} characters", field="message",
            )
        if self.max_attempts < 1:
            raise ValidationError("max_attempts must be at least 1", field="max_attempts")

    # ── Derived state ──

    @property
    def can_retry(self) -> bool:
        return (
            self.status == NotificationStatus.FAILED
            and self.delivery_attempts < self.max_attempts
        )

    @property
    def is_terminal(self) -> bool:
        if self.status == NotificationStatus.READ:
            return True
        return (
            self.status == NotificationStatus.FAILED
            and self.delivery_attempts >= self.max_attempts
        )

    def lease_held(self, now: datetime) -> bool:
        return self.lease_expires_at is not None and self.lease_expires_at > ensure_utc(now)

    def is_resumable(self, now: datetime) -> bool:
        """
        Whether a dispatch run may take this record over.

        A pending record qualifies once no run holds a live lease on it;
        retryable failures always qualify.
        """
        if self.status == NotificationStatus.PENDING:
            return not self.lease_held(now)
        return self.can_retry

    # ── Transitions ──

    def _require(self, action: str, *allowed: NotificationStatus) -> None:
        if self.status not in allowed:
            raise InvalidTransitionError(self.id, self.status.value, action)

    def _bump_attempts(self, action: str) -> None:
        if self.delivery_attempts >= self.max_attempts:
            raise InvalidTransitionError(self.id, self.status.value, action)
        self.delivery_attempts += 1

    def mark_sent(self, now: Optional[datetime] = None) -> None:
        self._require("mark_sent", NotificationStatus.PENDING)
        self._bump_attempts("mark_sent")
        now = now or utc_now()
        self.status = NotificationStatus.SENT
        self.sent_at = max(now, self.created_at)
        self.lease_expires_at = None
        self.updated_at = now

    def mark_delivered(self, now: Optional[datetime] = None) -> None:
        self._require("mark_delivered", NotificationStatus.SENT)
        now = now or utc_now()
        self.status = NotificationStatus.DELIVERED
        self.delivered_at = max(now, self.sent_at or self.created_at)
        self.updated_at = now

    def mark_failed(self, reason: str, now: Optional[datetime] = None) -> None:
        self._require("mark_failed", NotificationStatus.PENDING, NotificationStatus.SENT)
        self._bump_attempts("mark_failed")
        self.status = NotificationStatus.FAILED
        self.error_message = (reason or "unknown error")[:MESSAGE_MAX_LENGTH]
        self.lease_expires_at = None
        self.updated_at = now or utc_now()

    def mark_read(self, now: Optional[datetime] = None) -> None:
        self._require("mark_read", NotificationStatus.SENT, NotificationStatus.DELIVERED)
        now = now or utc_now()
        self.status = NotificationStatus.READ
        self.read_at = now
        self.updated_at = now

    def reopen(self, now: Optional[datetime] = None, lease_seconds: Optional[float] = None) -> None:
        """failed (retryable) → pending under a fresh lease, without counting an attempt."""
        if not self.can_retry:
            raise InvalidTransitionError(self.id, self.status.value, "reopen")
        now = now or utc_now()
        self.status = NotificationStatus.PENDING
        self.lease_expires_at = lease_until(now, lease_seconds)
        self.updated_at = now

    def claim(self, now: Optional[datetime] = None, lease_seconds: Optional[float] = None) -> None:
        """Take over a resumable record (reopening a retryable failure)."""
        now = now or utc_now()
        if not self.is_resumable(now):
            raise InvalidTransitionError(self.id, self.status.value, "claim")
        self.status = NotificationStatus.PENDING
        self.lease_expires_at = lease_until(now, lease_seconds)
        self.updated_at = now

    def release(self, now: Optional[datetime] = None) -> None:
        """Drop the lease on a pending record so the next run resumes it at once."""
        self._require("release", NotificationStatus.PENDING)
        self.lease_expires_at = None
        self.updated_at = now or utc_now()

    def record_channel_result(self, channel: str, outcome: Dict[str, Any]) -> None:
        self.channel_results[channel] = dict(outcome)
        self.updated_at = utc_now()

    # ── Serialisation ──

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "alert_id": self.alert_id,
            "type": self.type.value,
            "title": self.title,
            "message": self.message,
            "status": self.status.value,
            "priority": self.priority.value,
            "delivery_attempts": self.delivery_attempts,
            "max_attempts": self.max_attempts,
            "can_retry": self.can_retry,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "sent_at": _iso(self.sent_at),
            "delivered_at": _iso(self.delivered_at),
            "read_at": _iso(self.read_at),
            "error_message": self.error_message,
            "channel_results": dict(self.channel_results),
            "lease_expires_at": _iso(self.lease_expires_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NotificationRecord":
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            alert_id=data["alert_id"],
            type=data["type"],
            title=data["title"],
            message=data["message"],
            status=data.get("status", NotificationStatus.PENDING),
            priority=data.get("priority", NotificationPriority.MEDIUM),
            delivery_attempts=data.get("delivery_attempts", 0),
            max_attempts=data.get("max_attempts", settings.NOTIFICATION_MAX_ATTEMPTS),
            created_at=ensure_utc(data["created_at"]),
            updated_at=ensure_utc(data.get("updated_at") or data["created_at"]),
            sent_at=_opt_dt(data.get("sent_at")),
            delivered_at=_opt_dt(data.get("delivered_at")),
            read_at=_opt_dt(data.get("read_at")),
            error_message=data.get("error_message"),
            channel_results=dict(data.get("channel_results") or {}),
            lease_expires_at=_opt_dt(data.get("lease_expires_at")),
        )
