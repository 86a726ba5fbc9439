"""
matching.py — Who is affected by an alert, and which alerts are near a place.

═══════════════════════════════════════════════════════════════════════════
TWO RADII, TWO QUESTIONS
═══════════════════════════════════════════════════════════════════════════

    find_affected_users(alert)
        "Who is inside the danger zone?"
        disc = (alert.location, alert.radius_km)
        Notification preferences do NOT gate membership; they only decide
        which channel (if any) the dispatcher uses.

    find_alerts_near(point, radius_km)
        "What is happening around here?"
        disc = (point, caller's radius)

The two are deliberately not symmetric: a user 40 km from an alert with a
50 km radius is affected, yet a 10 km "nearby" query from that user's
location does not surface the alert.

``find_alerts_for_user`` is the personal variant of the nearby query and
uses the user's own ``alert_radius_km``.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Optional, Tuple

from geoalert.alerts.models import Alert, AlertFilters, User, utc_now
from geoalert.alerts.validity import log_status_drift
from geoalert.spatial.geo_math import GeoPoint, distance_km, require_point
from geoalert.storage.base import AlertStore, UserStore

logger = logging.getLogger(__name__)


class MatchEngine:
    """Geo-radius matching over the alert and user stores."""

    def __init__(self, alerts: AlertStore, users: UserStore) -> None:
        self._alerts = alerts
        self._users = users

    async def find_affected_users(self, alert: Alert) -> List[User]:
        """Active users located within the alert's own radius."""
        center = require_point(alert.location, "affected-user matching")
        users = await self._users.find_active_near(center, alert.radius_km)
        logger.info(
            "Alert %s: %d users within %.1f km",
            alert.id, len(users), alert.radius_km,
            extra={"alert_id": alert.id, "matched": len(users)},
        )
        return users

    async def find_alerts_near(
        self,
        point: GeoPoint,
        radius_km: float,
        filters: Optional[AlertFilters] = None,
        now: Optional[datetime] = None,
    ) -> List[Alert]:
        """Public alerts active at ``now`` whose point lies in the query disc."""
        now = now or utc_now()
        alerts = await self._alerts.find_active_near(point, radius_km, filters, now)
        drifted = sum(1 for alert in alerts if log_status_drift(alert, now))
        if drifted:
            logger.info("%d of %d nearby alerts have a stale status", drifted, len(alerts))
        return alerts

    async def find_alerts_for_user(
        self,
        user: User,
        filters: Optional[AlertFilters] = None,
        now: Optional[datetime] = None,
    ) -> List[Alert]:
        if user.location is None:
            return []
        return await self.find_alerts_near(
            user.location, user.preferences.alert_radius_km, filters, now,
        )


def with_distances(point: GeoPoint, alerts: List[Alert]) -> List[Tuple[Alert, float]]:
    """Pair each alert with its distance (km) from ``point``, order preserved."""
    return [(alert, distance_km(point, alert.location)) for alert in alerts]
