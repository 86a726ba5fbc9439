"""
validity.py — Temporal validity of alerts.

The window [valid_from, valid_until] is the authoritative definition of
"active". ``Alert.status`` is a cache the expiry sweep keeps roughly in
step; hot-path queries never consult it as the sole gate.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from geoalert.alerts.models import Alert, AlertStatus, ensure_utc
from geoalert.core.errors import ConsistencyWarning

logger = logging.getLogger(__name__)


def is_active_at(alert: Alert, instant: datetime) -> bool:
    """valid_from ≤ instant ≤ valid_until, whatever ``status`` says."""
    instant = ensure_utc(instant)
    return alert.valid_from <= instant <= alert.valid_until


def is_expired_at(alert: Alert, instant: datetime) -> bool:
    return ensure_utc(instant) > alert.valid_until


def status_drift(alert: Alert, instant: datetime) -> Optional[ConsistencyWarning]:
    """
    Report disagreement between the stored status and computed validity.

    Only ``active`` vs ``expired`` are compared: an alert stored as
    ``active`` but outside its window, or stored as ``expired`` while its
    window is open. ``inactive`` is an admin decision and never drifts.
    """
    active = is_active_at(alert, instant)
    if alert.status == AlertStatus.ACTIVE and not active:
        return ConsistencyWarning(alert.id, alert.status.value, active)
    if alert.status == AlertStatus.EXPIRED and active:
        return ConsistencyWarning(alert.id, alert.status.value, active)
    return None


def log_status_drift(alert: Alert, instant: datetime) -> bool:
    """Log drift as a warning; returns True when drift was found."""
    warning = status_drift(alert, instant)
    if warning is None:
        return False
    logger.warning("%s", warning, extra={"alert_id": alert.id})
    return True
