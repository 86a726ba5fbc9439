"""
test_dispatch.py — DispatchCoordinator: failure isolation, at-most-one
delivery, retry bound, channel selection and deadline/resume.

Run with:
    pytest tests/test_dispatch.py -v
"""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from geoalert.alerts.dispatch import DispatchCoordinator, PairOutcome
from geoalert.alerts.matching import MatchEngine
from geoalert.alerts.models import (
    Alert,
    NotificationStatus,
    NotificationType,
    User,
    UserPreferences,
    utc_now,
)
from geoalert.core.errors import TransientIOError
from geoalert.spatial.geo_math import GeoPoint
from geoalert.storage.memory import MemoryNotificationLedger, create_memory_stores
from geoalert.storage.sql import create_sql_stores


MUMBAI = GeoPoint(lon=72.8777, lat=19.0760)
NEARBY = [
    GeoPoint(lon=72.8800, lat=19.0800),
    GeoPoint(lon=72.8900, lat=19.0850),
    GeoPoint(lon=72.8650, lat=19.0700),
]


def _make_alert(**overrides) -> Alert:
    now = utc_now()
    fields = dict(
        title="Flood Warning - Mumbai",
        description="Heavy rainfall detected in Mumbai.",
        type="flood",
        severity="critical",
        location=MUMBAI,
        radius_km=25.0,
        valid_from=now - timedelta(hours=1),
        valid_until=now + timedelta(hours=5),
        created_by="system",
    )
    fields.update(overrides)
    return Alert(**fields)


def _make_coordinator(stores, push=None, email=None, retry=None, **kwargs) -> DispatchCoordinator:
    return DispatchCoordinator(
        MatchEngine(stores.alerts, stores.users),
        stores.notifications,
        stores.users,
        push_notifier=push,
        email_notifier=email,
        retry=retry,
        **kwargs,
    )


async def _add_users(stores, make_subscription, count=3, **user_kwargs):
    users = []
    for i in range(count):
        name = f"user{i + 1}"
        user = User(
            email=f"{name}@example.com",
            name=name,
            location=NEARBY[i % len(NEARBY)],
            push_subscription=make_subscription(name),
            **user_kwargs,
        )
        users.append(await stores.users.add(user))
    return users


async def _only_record(stores, user):
    records = await stores.notifications.list_for_user(user.id)
    assert len(records) == 1
    return records[0]


# ═══════════════════════════════════════════════════════════════════════════
# Failure isolation
# ═══════════════════════════════════════════════════════════════════════════

class TestFailureIsolation:

    async def test_push_raising_for_one_user(self, stores, push_notifier, fast_retry, make_subscription):
        users = await _add_users(stores, make_subscription)
        push_notifier.raise_for.add(make_subscription("user2").endpoint)
        coordinator = _make_coordinator(stores, push=push_notifier, retry=fast_retry)

        summary = await coordinator.dispatch(_make_alert())

        assert summary.matched == 3
        assert (summary.sent, summary.failed, summary.errors) == (2, 1, 0)

        first, second, third = [await _only_record(stores, u) for u in users]
        assert first.status == NotificationStatus.SENT
        assert third.status == NotificationStatus.SENT
        assert second.status == NotificationStatus.FAILED
        assert second.delivery_attempts == 1
        assert second.can_retry
        assert "exploded" in second.error_message

    async def test_store_failure_isolated(self, push_notifier, fast_retry, make_subscription):
        class FlakyLedger(MemoryNotificationLedger):
            async def create(self, user_id, *args, **kwargs):
                if user_id == broken_id:
                    raise TransientIOError("database", "connection reset")
                return await super().create(user_id, *args, **kwargs)

        stores = create_memory_stores()
        stores.notifications = FlakyLedger()
        users = await _add_users(stores, make_subscription)
        broken_id = users[0].id

        summary = await _make_coordinator(stores, push=push_notifier, retry=fast_retry).dispatch(
            _make_alert(),
        )
        assert summary.errors == 1
        assert summary.sent == 2
        assert summary.outcomes[broken_id] == PairOutcome.ERROR.value
        assert await stores.notifications.list_for_user(broken_id) == []


# ═══════════════════════════════════════════════════════════════════════════
# At-most-one dispatch
# ═══════════════════════════════════════════════════════════════════════════

class TestAtMostOnce:

    async def test_concurrent_runs_send_once_per_user(
        self, stores, push_notifier, fast_retry, make_subscription,
    ):
        users = await _add_users(stores, make_subscription)
        coordinator = _make_coordinator(stores, push=push_notifier, retry=fast_retry)
        alert = _make_alert()

        summaries = await asyncio.gather(*(coordinator.dispatch(alert) for _ in range(5)))

        assert sum(s.sent for s in summaries) == 3
        assert sum(s.skipped for s in summaries) == 4 * 3
        assert len(push_notifier.calls) == 3
        for user in users:
            assert (await _only_record(stores, user)).status == NotificationStatus.SENT

    async def test_rerun_after_success_skips(self, stores, push_notifier, fast_retry, make_subscription):
        await _add_users(stores, make_subscription, count=1)
        coordinator = _make_coordinator(stores, push=push_notifier, retry=fast_retry)
        alert = _make_alert()

        await coordinator.dispatch(alert)
        again = await coordinator.dispatch(alert)
        assert again.skipped == 1
        assert again.sent == 0
        assert len(push_notifier.calls) == 1

    @pytest.mark.parametrize("backend", ["memory", "sql"])
    async def test_two_coordinators_share_one_ledger(
        self, backend, sql_url, push_notifier, fast_retry, make_subscription,
    ):
        stores = create_memory_stores() if backend == "memory" else create_sql_stores(sql_url)
        await stores.open()
        try:
            users = await _add_users(stores, make_subscription)
            push_notifier.delay = 0.2
            api_side = _make_coordinator(stores, push=push_notifier, retry=fast_retry)
            scheduler_side = _make_coordinator(stores, push=push_notifier, retry=fast_retry)
            alert = _make_alert()

            summaries = await asyncio.gather(
                api_side.dispatch(alert), scheduler_side.dispatch(alert),
            )

            assert len(push_notifier.calls) == 3
            assert sum(s.sent for s in summaries) == 3
            assert sum(s.skipped for s in summaries) == 3
            assert sum(s.errors for s in summaries) == 0
            for user in users:
                assert (await _only_record(stores, user)).status == NotificationStatus.SENT
        finally:
            await stores.close()

    async def test_abandoned_lease_taken_over(self, stores, push_notifier, fast_retry, make_subscription):
        (user,) = await _add_users(stores, make_subscription, count=1)
        alert = _make_alert()
        abandoned = await stores.notifications.create(
            user.id, alert.id, NotificationType.PUSH, alert.title, alert.description,
            lease_seconds=0,
        )

        summary = await _make_coordinator(stores, push=push_notifier, retry=fast_retry).dispatch(alert)

        assert (summary.sent, summary.resumed) == (1, 1)
        record = await _only_record(stores, user)
        assert record.id == abandoned.id
        assert record.lease_expires_at is None

    async def test_live_lease_not_taken_over(self, stores, push_notifier, fast_retry, make_subscription):
        (user,) = await _add_users(stores, make_subscription, count=1)
        alert = _make_alert()
        await stores.notifications.create(
            user.id, alert.id, NotificationType.PUSH, alert.title, alert.description,
            lease_seconds=600,
        )

        summary = await _make_coordinator(stores, push=push_notifier, retry=fast_retry).dispatch(alert)

        assert summary.skipped == 1
        assert push_notifier.calls == []


# ═══════════════════════════════════════════════════════════════════════════
# Retry bound
# ═══════════════════════════════════════════════════════════════════════════

class TestRetryBound:

    async def test_failed_record_resumed_until_exhausted(self, push_notifier, fast_retry, make_subscription):
        stores = create_memory_stores(max_attempts=3)
        (user,) = await _add_users(stores, make_subscription, count=1)
        push_notifier.fail_for.add(make_subscription("user1").endpoint)
        coordinator = _make_coordinator(stores, push=push_notifier, retry=fast_retry)
        alert = _make_alert()

        first = await coordinator.dispatch(alert)
        assert (first.failed, first.resumed) == (1, 0)

        for expected_attempts in (2, 3):
            summary = await coordinator.dispatch(alert)
            assert (summary.failed, summary.resumed) == (1, 1)
            record = await _only_record(stores, user)
            assert record.delivery_attempts == expected_attempts

        assert record.delivery_attempts == record.max_attempts
        assert not record.can_retry
        assert record.is_terminal

    async def test_retry_succeeds(self, stores, push_notifier, fast_retry, make_subscription):
        (user,) = await _add_users(stores, make_subscription, count=1)
        endpoint = make_subscription("user1").endpoint
        push_notifier.fail_for.add(endpoint)
        coordinator = _make_coordinator(stores, push=push_notifier, retry=fast_retry)
        alert = _make_alert()

        await coordinator.dispatch(alert)
        push_notifier.fail_for.discard(endpoint)
        summary = await coordinator.dispatch(alert)

        assert (summary.sent, summary.resumed) == (1, 1)
        record = await _only_record(stores, user)
        assert record.status == NotificationStatus.SENT
        assert record.delivery_attempts == 2


# ═══════════════════════════════════════════════════════════════════════════
# Dispatchability and channel selection
# ═══════════════════════════════════════════════════════════════════════════

class TestDispatchability:

    async def test_inactive_alert_skipped(self, stores, push_notifier, make_subscription):
        await _add_users(stores, make_subscription)
        summary = await _make_coordinator(stores, push=push_notifier).dispatch(
            _make_alert(status="inactive"),
        )
        assert summary.matched == 0
        assert summary.reason
        assert push_notifier.calls == []

    async def test_expired_window_skipped(self, stores, push_notifier, make_subscription):
        await _add_users(stores, make_subscription)
        now = utc_now()
        summary = await _make_coordinator(stores, push=push_notifier).dispatch(_make_alert(
            valid_from=now - timedelta(hours=3), valid_until=now - timedelta(minutes=1),
        ))
        assert summary.matched == 0
        assert push_notifier.calls == []

    async def test_nobody_in_range(self, stores, push_notifier):
        summary = await _make_coordinator(stores, push=push_notifier).dispatch(_make_alert())
        assert summary.matched == 0
        assert summary.reason is None


class TestChannels:

    async def test_push_payload_and_priority(self, stores, push_notifier, fast_retry, make_subscription):
        (user,) = await _add_users(stores, make_subscription, count=1)
        alert = _make_alert()
        await _make_coordinator(stores, push=push_notifier, retry=fast_retry).dispatch(alert)

        _, payload = push_notifier.calls[0]
        assert payload["title"] == alert.title
        assert payload["data"] == {
            "alertId": alert.id,
            "url": f"/alerts/{alert.id}",
            "severity": "critical",
            "type": "flood",
        }
        record = await _only_record(stores, user)
        assert record.type == NotificationType.PUSH
        assert record.priority.value == "urgent"

    async def test_email_alongside_push_recorded(
        self, stores, push_notifier, email_notifier, fast_retry, make_subscription,
    ):
        (user,) = await _add_users(stores, make_subscription, count=1)
        email_notifier.fail_for.add(user.email)
        await _make_coordinator(
            stores, push=push_notifier, email=email_notifier, retry=fast_retry,
        ).dispatch(_make_alert())

        record = await _only_record(stores, user)
        assert record.status == NotificationStatus.SENT
        assert record.channel_results["email"]["ok"] is False
        assert len(email_notifier.calls) == 1

    async def test_email_primary_without_subscription(self, stores, email_notifier, fast_retry):
        user = await stores.users.add(User(email="mail@example.com", name="Mail", location=NEARBY[0]))
        await _make_coordinator(stores, email=email_notifier, retry=fast_retry).dispatch(_make_alert())

        record = await _only_record(stores, user)
        assert record.type == NotificationType.EMAIL
        assert record.status == NotificationStatus.SENT
        address, subject, _ = email_notifier.calls[0]
        assert address == "mail@example.com"
        assert "[CRITICAL]" in subject

    async def test_email_primary_failure_drives_state(self, stores, email_notifier, fast_retry):
        user = await stores.users.add(User(email="bounce@example.com", name="B", location=NEARBY[0]))
        email_notifier.fail_for.add(user.email)
        await _make_coordinator(stores, email=email_notifier, retry=fast_retry).dispatch(_make_alert())

        record = await _only_record(stores, user)
        assert record.status == NotificationStatus.FAILED
        assert record.error_message == "mailbox unavailable"

    async def test_in_app_when_no_channel(self, stores, push_notifier, email_notifier, fast_retry, make_subscription):
        user = await stores.users.add(User(
            email="quiet@example.com", name="Quiet", location=NEARBY[0],
            push_subscription=make_subscription("quiet"),
            preferences=UserPreferences(email_notifications=False, push_notifications=False),
        ))
        await _make_coordinator(
            stores, push=push_notifier, email=email_notifier, retry=fast_retry,
        ).dispatch(_make_alert())

        record = await _only_record(stores, user)
        assert record.type == NotificationType.ALERT
        assert record.status == NotificationStatus.SENT
        assert push_notifier.calls == [] and email_notifier.calls == []

    async def test_expired_subscription_cleared(self, stores, push_notifier, fast_retry, make_subscription):
        (user,) = await _add_users(stores, make_subscription, count=1)
        push_notifier.expired_for.add(make_subscription("user1").endpoint)
        await _make_coordinator(stores, push=push_notifier, retry=fast_retry).dispatch(_make_alert())

        assert (await _only_record(stores, user)).status == NotificationStatus.FAILED
        assert (await stores.users.get(user.id)).push_subscription is None


# ═══════════════════════════════════════════════════════════════════════════
# Deadline and resumption
# ═══════════════════════════════════════════════════════════════════════════

class TestDeadline:

    async def test_timeout_leaves_pending_then_resumes(
        self, stores, push_notifier, fast_retry, make_subscription,
    ):
        users = await _add_users(stores, make_subscription)
        coordinator = _make_coordinator(stores, push=push_notifier, retry=fast_retry)
        alert = _make_alert()

        push_notifier.delay = 1.0
        first = await coordinator.dispatch(alert, timeout=0.05)
        assert first.cancelled
        assert first.sent == 0
        for user in users:
            record = await _only_record(stores, user)
            assert record.status == NotificationStatus.PENDING
            assert record.delivery_attempts == 0

        push_notifier.delay = 0.0
        second = await coordinator.dispatch(alert)
        assert not second.cancelled
        assert (second.sent, second.resumed) == (3, 3)
        for user in users:
            assert (await _only_record(stores, user)).status == NotificationStatus.SENT

    async def test_fresh_retrying_pending_is_not_stolen(
        self, stores, push_notifier, fast_retry, make_subscription,
    ):
        (user,) = await _add_users(stores, make_subscription, count=1)
        push_notifier.fail_for.add(make_subscription("user1").endpoint)
        coordinator = _make_coordinator(
            stores, push=push_notifier, retry=fast_retry, stale_after_seconds=3600,
        )
        alert = _make_alert()

        await coordinator.dispatch(alert)
        record = await _only_record(stores, user)
        await stores.notifications.reopen(record.id)

        summary = await coordinator.dispatch(alert)
        assert summary.skipped == 1
        assert (await _only_record(stores, user)).delivery_attempts == 1

    async def test_caller_cancellation_propagates(self, stores, push_notifier, fast_retry, make_subscription):
        users = await _add_users(stores, make_subscription)
        push_notifier.delay = 1.0
        coordinator = _make_coordinator(stores, push=push_notifier, retry=fast_retry)

        task = asyncio.create_task(coordinator.dispatch(_make_alert()))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        for user in users:
            assert (await _only_record(stores, user)).status == NotificationStatus.PENDING
