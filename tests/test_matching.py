"""
test_matching.py — Affected-user matching and the nearby-alert query.
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from geoalert.alerts.matching import MatchEngine, with_distances
from geoalert.alerts.models import Alert, AlertFilters, User, UserPreferences, utc_now
from geoalert.core.errors import UnsupportedGeographyError
from geoalert.spatial.geo_math import GeoPoint, GeoPolygon


MUMBAI = GeoPoint(lon=72.8777, lat=19.0760)
MUMBAI_NEARBY = GeoPoint(lon=72.8800, lat=19.0800)
DELHI = GeoPoint(lon=77.1025, lat=28.7041)
THANE = GeoPoint(lon=72.9781, lat=19.2183)


def _make_alert(**overrides) -> Alert:
    now = utc_now()
    fields = dict(
        title="Flood Warning - Mumbai",
        description="Heavy rainfall detected in Mumbai.",
        type="flood",
        severity="high",
        location=MUMBAI,
        radius_km=25.0,
        valid_from=now - timedelta(hours=1),
        valid_until=now + timedelta(hours=5),
        created_by="system",
    )
    fields.update(overrides)
    return Alert(**fields)


@pytest.fixture
def engine(stores):
    return MatchEngine(stores.alerts, stores.users)


class TestFindAffectedUsers:

    async def test_mumbai_user_in_delhi_user_out(self, stores, engine):
        near = await stores.users.add(User(email="near@example.com", name="Near", location=MUMBAI_NEARBY))
        await stores.users.add(User(email="far@example.com", name="Far", location=DELHI))

        affected = await engine.find_affected_users(_make_alert())
        assert [u.id for u in affected] == [near.id]

    async def test_uses_alert_radius_not_user_preference(self, stores, engine):
        user = await stores.users.add(User(
            email="thane@example.com", name="Thane", location=THANE,
            preferences=UserPreferences(alert_radius_km=5.0),
        ))
        affected = await engine.find_affected_users(_make_alert(radius_km=50.0))
        assert [u.id for u in affected] == [user.id]

    async def test_preferences_do_not_gate_membership(self, stores, engine):
        await stores.users.add(User(
            email="quiet@example.com", name="Quiet", location=MUMBAI_NEARBY,
            preferences=UserPreferences(email_notifications=False, push_notifications=False),
        ))
        assert len(await engine.find_affected_users(_make_alert())) == 1

    async def test_polygon_alert_rejected(self, engine):
        polygon = GeoPolygon(((
            (72.80, 19.00), (72.95, 19.00), (72.95, 19.15), (72.80, 19.15), (72.80, 19.00),
        ),))
        with pytest.raises(UnsupportedGeographyError):
            await engine.find_affected_users(_make_alert(location=polygon))


class TestFindAlertsNear:

    async def test_radii_are_not_symmetric(self, stores, engine):
        # Thane is ~19 km from Mumbai: inside a 50 km alert, outside a 10 km query
        alert = await stores.alerts.insert(_make_alert(radius_km=50.0))
        await stores.users.add(User(email="t@example.com", name="T", location=THANE))

        assert len(await engine.find_affected_users(alert)) == 1
        assert await engine.find_alerts_near(THANE, 10.0) == []
        assert [a.id for a in await engine.find_alerts_near(THANE, 25.0)] == [alert.id]

    async def test_filters_forwarded(self, stores, engine):
        await stores.alerts.insert(_make_alert(type="flood"))
        await stores.alerts.insert(_make_alert(type="landslide"))
        hits = await engine.find_alerts_near(MUMBAI, 5.0, AlertFilters(type="landslide"))
        assert [a.type.value for a in hits] == ["landslide"]

    async def test_stale_status_still_served(self, stores, engine, caplog):
        alert = await stores.alerts.insert(_make_alert(status="expired"))
        hits = await engine.find_alerts_near(MUMBAI, 5.0)
        assert [a.id for a in hits] == [alert.id]
        assert "has status 'expired'" in caplog.text

    async def test_for_user_uses_preference_radius(self, stores, engine):
        alert = await stores.alerts.insert(_make_alert())
        wide = User(email="w@example.com", name="W", location=THANE,
                    preferences=UserPreferences(alert_radius_km=30.0))
        narrow = User(email="n@example.com", name="N", location=THANE,
                      preferences=UserPreferences(alert_radius_km=5.0))
        nowhere = User(email="x@example.com", name="X")

        assert [a.id for a in await engine.find_alerts_for_user(wide)] == [alert.id]
        assert await engine.find_alerts_for_user(narrow) == []
        assert await engine.find_alerts_for_user(nowhere) == []

    def test_with_distances_keeps_order(self):
        first = _make_alert(location=DELHI)
        second = _make_alert(location=MUMBAI)
        paired = with_distances(MUMBAI, [first, second])
        assert [a for a, _ in paired] == [first, second]
        assert paired[1][1] == 0.0
        assert paired[0][1] > 1000
