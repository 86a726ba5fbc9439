"""
test_stores.py — AlertStore / UserStore / NotificationLedger contracts.

Every test runs against both backends: the in-process store and the
SQLAlchemy store on an in-memory SQLite database.

Run with:
    pytest tests/test_stores.py -v
"""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from geoalert.alerts.models import (
    Alert,
    AlertFilters,
    AlertStatus,
    NotificationStatus,
    NotificationType,
    PushSubscription,
    User,
    UserPreferences,
    utc_now,
)
from geoalert.core.errors import (
    DuplicatePendingError,
    InvalidTransitionError,
    NotFoundError,
    UnsupportedGeographyError,
    ValidationError,
)
from geoalert.spatial.geo_math import GeoPoint, GeoPolygon
from geoalert.storage.base import UpsertOutcome, build_store_bundle
from geoalert.storage.memory import create_memory_stores
from geoalert.storage.sql import create_sql_stores


MUMBAI = GeoPoint(lon=72.8777, lat=19.0760)
MUMBAI_NEARBY = GeoPoint(lon=72.8800, lat=19.0800)
THANE = GeoPoint(lon=72.9781, lat=19.2183)        # ~19 km from Mumbai
PUNE = GeoPoint(lon=73.8567, lat=18.5204)          # ~120 km
DELHI = GeoPoint(lon=77.1025, lat=28.7041)


@pytest.fixture(params=["memory", "sql"])
async def bundle(request, sql_url):
    if request.param == "memory":
        stores = create_memory_stores(max_attempts=3)
    else:
        stores = create_sql_stores(sql_url, max_attempts=3)
    await stores.open()
    yield stores
    await stores.close()


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


def _make_user(email: str, location=MUMBAI_NEARBY, **overrides) -> User:
    return User(email=email, name=email.split("@")[0], location=location, **overrides)


async def _create_record(ledger, user_id="USR-1", alert_id="ALR-1"):
    return await ledger.create(
        user_id, alert_id, NotificationType.PUSH, "Flood Warning", "Heavy rain.",
    )


# ═══════════════════════════════════════════════════════════════════════════
# Alerts — upsert / dedup
# ═══════════════════════════════════════════════════════════════════════════

class TestAlertUpsert:

    async def test_first_upsert_creates(self, bundle):
        result = await bundle.alerts.upsert_by_external_id(
            _make_alert(external_id="weather_Mumbai_1700000000"),
        )
        assert result.outcome == UpsertOutcome.CREATED
        stored = await bundle.alerts.get_by_external_id("weather_Mumbai_1700000000")
        assert stored.id == result.alert.id

    async def test_identical_payload_is_noop(self, bundle):
        alert = _make_alert(external_id="weather_Mumbai_1700000000")
        first = await bundle.alerts.upsert_by_external_id(alert)
        again = _make_alert(
            external_id="weather_Mumbai_1700000000",
            valid_from=alert.valid_from, valid_until=alert.valid_until,
        )
        second = await bundle.alerts.upsert_by_external_id(again)

        assert second.outcome == UpsertOutcome.UNCHANGED
        assert not second.changed
        assert second.alert.id == first.alert.id
        assert second.alert.updated_at == first.alert.updated_at
        assert (await bundle.alerts.stats(utc_now()))["total"] == 1

    async def test_changed_payload_merges(self, bundle):
        alert = _make_alert(external_id="weather_Mumbai_1700000000", created_by="ingest")
        first = await bundle.alerts.upsert_by_external_id(alert)
        await bundle.alerts.increment_statistic(first.alert.id, "views")

        edited = _make_alert(
            external_id="weather_Mumbai_1700000000",
            description="Rainfall intensifying.",
            created_by="someone-else",
            valid_from=alert.valid_from,
            valid_until=alert.valid_until,
        )
        second = await bundle.alerts.upsert_by_external_id(edited)

        assert second.outcome == UpsertOutcome.UPDATED
        stored = await bundle.alerts.get(first.alert.id)
        assert stored.description == "Rainfall intensifying."
        assert stored.created_by == "ingest"
        assert stored.created_at == first.alert.created_at
        assert stored.statistics.views == 1

    async def test_concurrent_upserts_leave_one_row(self, bundle):
        base = _make_alert(external_id="weather_Chennai_severe_weather_1700000000")
        copies = [
            _make_alert(
                external_id=base.external_id,
                valid_from=base.valid_from,
                valid_until=base.valid_until,
            )
            for _ in range(5)
        ]
        results = await asyncio.gather(*(bundle.alerts.upsert_by_external_id(a) for a in copies))
        outcomes = [r.outcome for r in results]
        assert outcomes.count(UpsertOutcome.CREATED) == 1
        assert len({r.alert.id for r in results}) == 1
        assert (await bundle.alerts.stats(utc_now()))["total"] == 1

    async def test_no_external_id_always_inserts(self, bundle):
        await bundle.alerts.upsert_by_external_id(_make_alert())
        await bundle.alerts.upsert_by_external_id(_make_alert())
        assert (await bundle.alerts.stats(utc_now()))["total"] == 2

    async def test_insert_duplicate_external_id_rejected(self, bundle):
        await bundle.alerts.insert(_make_alert(external_id="dup"))
        with pytest.raises(ValidationError):
            await bundle.alerts.insert(_make_alert(external_id="dup"))

    async def test_delete(self, bundle):
        alert = await bundle.alerts.insert(_make_alert(external_id="gone"))
        assert await bundle.alerts.delete(alert.id)
        assert await bundle.alerts.get(alert.id) is None
        assert await bundle.alerts.get_by_external_id("gone") is None
        assert not await bundle.alerts.delete(alert.id)

    async def test_increment_unknown_statistic(self, bundle):
        alert = await bundle.alerts.insert(_make_alert())
        with pytest.raises(ValidationError):
            await bundle.alerts.increment_statistic(alert.id, "likes")
        with pytest.raises(NotFoundError):
            await bundle.alerts.increment_statistic("ALR-MISSING", "views")


# ═══════════════════════════════════════════════════════════════════════════
# Alerts — nearby / expiry
# ═══════════════════════════════════════════════════════════════════════════

class TestAlertQueries:

    async def test_nearby_excludes_far_alerts(self, bundle):
        near = await bundle.alerts.insert(_make_alert(location=MUMBAI))
        await bundle.alerts.insert(_make_alert(location=DELHI, title="Delhi Flood"))

        hits = await bundle.alerts.find_active_near(MUMBAI_NEARBY, 50.0)
        assert [a.id for a in hits] == [near.id]

    async def test_window_not_status_decides(self, bundle):
        now = utc_now()
        stale_active = await bundle.alerts.insert(_make_alert(
            valid_from=now - timedelta(hours=3), valid_until=now - timedelta(hours=1),
        ))
        open_but_expired = await bundle.alerts.insert(_make_alert(status="expired"))

        ids = {a.id for a in await bundle.alerts.find_active_near(MUMBAI, 10.0, now=now)}
        assert open_but_expired.id in ids
        assert stale_active.id not in ids

    async def test_future_alert_not_active(self, bundle):
        now = utc_now()
        await bundle.alerts.insert(_make_alert(
            valid_from=now + timedelta(hours=1), valid_until=now + timedelta(hours=2),
        ))
        assert await bundle.alerts.find_active_near(MUMBAI, 10.0, now=now) == []

    async def test_private_alerts_hidden(self, bundle):
        await bundle.alerts.insert(_make_alert(is_public=False))
        assert await bundle.alerts.find_active_near(MUMBAI, 10.0) == []

    async def test_ranked_by_severity_then_recency(self, bundle):
        now = utc_now()
        low = await bundle.alerts.insert(_make_alert(severity="low"))
        old_high = await bundle.alerts.insert(
            _make_alert(severity="high", created_at=now - timedelta(hours=2)),
        )
        new_high = await bundle.alerts.insert(_make_alert(severity="high", created_at=now))
        critical = await bundle.alerts.insert(
            _make_alert(severity="critical", created_at=now - timedelta(days=1)),
        )

        hits = await bundle.alerts.find_active_near(MUMBAI, 10.0)
        assert [a.id for a in hits] == [critical.id, new_high.id, old_high.id, low.id]

    async def test_filters_and_limit(self, bundle):
        await bundle.alerts.insert(_make_alert(type="flood", severity="high"))
        await bundle.alerts.insert(_make_alert(type="flood", severity="low"))
        await bundle.alerts.insert(_make_alert(type="landslide", severity="high"))

        floods = await bundle.alerts.find_active_near(MUMBAI, 10.0, AlertFilters(type="flood"))
        assert {a.type.value for a in floods} == {"flood"}
        assert len(floods) == 2

        high = await bundle.alerts.find_active_near(MUMBAI, 10.0, AlertFilters(severity="high"))
        assert len(high) == 2

        limited = await bundle.alerts.find_active_near(MUMBAI, 10.0, AlertFilters(limit=1))
        assert len(limited) == 1

    async def test_polygon_alert_fails_loudly(self, bundle):
        polygon = GeoPolygon(((
            (72.80, 19.00), (72.95, 19.00), (72.95, 19.15), (72.80, 19.15), (72.80, 19.00),
        ),))
        stored = await bundle.alerts.insert(_make_alert(location=polygon))
        assert isinstance((await bundle.alerts.get(stored.id)).location, GeoPolygon)

        with pytest.raises(UnsupportedGeographyError):
            await bundle.alerts.find_active_near(MUMBAI, 50.0)

    async def test_expired_active_then_mark(self, bundle):
        now = utc_now()
        expired = await bundle.alerts.insert(_make_alert(
            valid_from=now - timedelta(hours=3), valid_until=now - timedelta(hours=1),
        ))
        await bundle.alerts.insert(_make_alert())

        found = await bundle.alerts.find_expired_active(now)
        assert [a.id for a in found] == [expired.id]

        assert await bundle.alerts.mark_expired([expired.id]) == 1
        assert (await bundle.alerts.get(expired.id)).status == AlertStatus.EXPIRED
        assert await bundle.alerts.mark_expired([expired.id]) == 0
        assert await bundle.alerts.find_expired_active(now) == []

    async def test_stats(self, bundle):
        await bundle.alerts.insert(_make_alert(type="flood"))
        await bundle.alerts.insert(_make_alert(type="landslide", severity="critical"))
        stats = await bundle.alerts.stats(utc_now())
        assert stats["total"] == 2
        assert stats["active"] == 2
        assert stats["by_type"] == {"flood": 1, "landslide": 1}
        assert stats["by_severity"]["critical"] == 1
        assert stats["by_geography"] == {"Point": 2}


# ═══════════════════════════════════════════════════════════════════════════
# Users
# ═══════════════════════════════════════════════════════════════════════════

class TestUserStore:

    async def test_nearby_users_sorted_and_filtered(self, bundle):
        thane = await bundle.users.add(_make_user("thane@example.com", THANE))
        near = await bundle.users.add(_make_user("near@example.com", MUMBAI_NEARBY))
        await bundle.users.add(_make_user("pune@example.com", PUNE))
        await bundle.users.add(_make_user("idle@example.com", MUMBAI_NEARBY, is_active=False))
        await bundle.users.add(_make_user("nowhere@example.com", None))

        hits = await bundle.users.find_active_near(MUMBAI, 25.0)
        assert [u.id for u in hits] == [near.id, thane.id]

    async def test_preference_radius_when_none_given(self, bundle):
        wide = await bundle.users.add(_make_user(
            "wide@example.com", PUNE, preferences=UserPreferences(alert_radius_km=200.0),
        ))
        await bundle.users.add(_make_user(
            "narrow@example.com", PUNE, preferences=UserPreferences(alert_radius_km=10.0),
        ))
        hits = await bundle.users.find_active_near(MUMBAI)
        assert [u.id for u in hits] == [wide.id]

    async def test_duplicate_email_rejected(self, bundle):
        await bundle.users.add(_make_user("same@example.com"))
        with pytest.raises(ValidationError):
            await bundle.users.add(_make_user("same@example.com"))

    async def test_subscription_and_preferences(self, bundle):
        user = await bundle.users.add(_make_user("sub@example.com"))
        sub = PushSubscription(endpoint="https://push.example.com/a", p256dh="k", auth="a")

        updated = await bundle.users.update_subscription(user.id, sub)
        assert updated.push_subscription == sub
        assert (await bundle.users.get(user.id)).push_subscription == sub

        cleared = await bundle.users.update_subscription(user.id, None)
        assert cleared.push_subscription is None

        prefs = await bundle.users.update_preferences(user.id, email_notifications=False)
        assert prefs.preferences.email_notifications is False
        with pytest.raises(ValidationError):
            await bundle.users.update_preferences(user.id, alert_radius_km=0)

    async def test_update_unknown_user(self, bundle):
        with pytest.raises(NotFoundError):
            await bundle.users.update_subscription("USR-MISSING", None)


# ═══════════════════════════════════════════════════════════════════════════
# Notification ledger
# ═══════════════════════════════════════════════════════════════════════════

class TestNotificationLedger:

    async def test_create_then_duplicate(self, bundle):
        ledger = bundle.notifications
        record = await _create_record(ledger)
        assert record.status == NotificationStatus.PENDING
        assert record.max_attempts == 3

        with pytest.raises(DuplicatePendingError) as exc_info:
            await _create_record(ledger)
        assert exc_info.value.existing.id == record.id

    async def test_concurrent_creates_yield_one_record(self, bundle):
        ledger = bundle.notifications
        results = await asyncio.gather(
            *(_create_record(ledger) for _ in range(8)), return_exceptions=True,
        )
        created = [r for r in results if not isinstance(r, Exception)]
        duplicates = [r for r in results if isinstance(r, DuplicatePendingError)]
        assert len(created) == 1
        assert len(duplicates) == 7
        assert (await ledger.stats(utc_now()))["total"] == 1

    async def test_other_pairs_unaffected(self, bundle):
        ledger = bundle.notifications
        await _create_record(ledger, "USR-1", "ALR-1")
        await _create_record(ledger, "USR-2", "ALR-1")
        await _create_record(ledger, "USR-1", "ALR-2")
        assert (await ledger.stats(utc_now()))["total"] == 3

    async def test_sent_record_still_blocks(self, bundle):
        ledger = bundle.notifications
        record = await _create_record(ledger)
        await ledger.mark_sent(record.id)
        with pytest.raises(DuplicatePendingError):
            await _create_record(ledger)

    async def test_terminal_record_frees_the_pair(self, bundle):
        ledger = bundle.notifications
        record = await _create_record(ledger)
        await ledger.mark_sent(record.id)
        await ledger.mark_read(record.id)
        assert await ledger.find_open("USR-1", "ALR-1") is None
        fresh = await _create_record(ledger)
        assert fresh.id != record.id

    async def test_exhausted_failure_frees_the_pair(self, bundle):
        ledger = bundle.notifications
        record = await _create_record(ledger)
        for _ in range(2):
            await ledger.mark_failed(record.id, "push rejected")
            await ledger.reopen(record.id)
        exhausted = await ledger.mark_failed(record.id, "push rejected")
        assert exhausted.delivery_attempts == 3
        assert not exhausted.can_retry

        with pytest.raises(InvalidTransitionError):
            await ledger.reopen(record.id)
        assert (await ledger.get(record.id)).delivery_attempts == 3
        await _create_record(ledger)

    async def test_new_record_is_leased_to_its_creator(self, bundle):
        ledger = bundle.notifications
        record = await ledger.create(
            "USR-1", "ALR-1", NotificationType.PUSH, "Flood Warning", "Heavy rain.",
            lease_seconds=60,
        )
        stored = await ledger.get(record.id)
        assert stored.lease_held(utc_now())
        with pytest.raises(InvalidTransitionError):
            await ledger.claim(record.id, 60)

    async def test_concurrent_claims_have_one_winner(self, bundle):
        ledger = bundle.notifications
        record = await ledger.create(
            "USR-1", "ALR-1", NotificationType.PUSH, "Flood Warning", "Heavy rain.",
            lease_seconds=0,
        )
        results = await asyncio.gather(
            *(ledger.claim(record.id, 60) for _ in range(6)), return_exceptions=True,
        )
        claimed = [r for r in results if not isinstance(r, Exception)]
        lost = [r for r in results if isinstance(r, InvalidTransitionError)]
        assert len(claimed) == 1
        assert len(lost) == 5
        assert (await ledger.get(record.id)).lease_held(utc_now())

    async def test_released_record_can_be_claimed(self, bundle):
        ledger = bundle.notifications
        record = await _create_record(ledger)
        released = await ledger.release(record.id)
        assert released.lease_expires_at is None
        claimed = await ledger.claim(record.id, 60)
        assert claimed.status == NotificationStatus.PENDING
        assert claimed.delivery_attempts == 0

    async def test_rejected_transition_not_persisted(self, bundle):
        ledger = bundle.notifications
        record = await _create_record(ledger)
        with pytest.raises(InvalidTransitionError):
            await ledger.mark_delivered(record.id)
        assert (await ledger.get(record.id)).status == NotificationStatus.PENDING

    async def test_unknown_record(self, bundle):
        with pytest.raises(NotFoundError):
            await bundle.notifications.mark_sent("NTF-MISSING")

    async def test_channel_result_persisted(self, bundle):
        ledger = bundle.notifications
        record = await _create_record(ledger)
        await ledger.record_channel_result(record.id, "email", {"ok": True, "mode": "test"})
        assert (await ledger.get(record.id)).channel_results["email"]["mode"] == "test"

    async def test_list_and_mark_all_read(self, bundle):
        ledger = bundle.notifications
        first = await _create_record(ledger, "USR-1", "ALR-1")
        second = await _create_record(ledger, "USR-1", "ALR-2")
        await _create_record(ledger, "USR-1", "ALR-3")
        await ledger.mark_sent(first.id)
        await ledger.mark_sent(second.id)
        await ledger.mark_delivered(second.id)

        assert len(await ledger.list_for_user("USR-1")) == 3
        pending = await ledger.list_for_user("USR-1", status=NotificationStatus.PENDING)
        assert len(pending) == 1

        assert await ledger.mark_all_read("USR-1") == 2
        assert len(await ledger.list_for_user("USR-1", status=NotificationStatus.READ)) == 2

    async def test_purge_only_terminal(self, bundle):
        ledger = bundle.notifications
        done = await _create_record(ledger, "USR-1", "ALR-1")
        await ledger.mark_sent(done.id)
        await ledger.mark_read(done.id)
        live = await _create_record(ledger, "USR-2", "ALR-1")

        assert await ledger.purge_terminal(utc_now() - timedelta(days=1)) == 0
        assert await ledger.purge_terminal(utc_now() + timedelta(seconds=1)) == 1
        assert await ledger.get(done.id) is None
        assert await ledger.get(live.id) is not None


class TestStoreBundle:

    async def test_ping(self, bundle):
        await bundle.ping()

    def test_build_memory_bundle(self):
        assert build_store_bundle("memory").backend == "memory"

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            build_store_bundle("mongo")
