"""
Shared fixtures: in-memory stores, zero-backoff retry, and recording
notifiers whose behaviour can be scripted per user.
"""

from __future__ import annotations

import asyncio
import copy
from typing import Any, Dict, List, Set, Tuple

import pytest

from geoalert.alerts.channels import NotifierResult
from geoalert.alerts.models import NotificationRecord, PushSubscription
from geoalert.storage.base import RetryConfig
from geoalert.storage.memory import create_memory_stores


class RecordingPushNotifier:
    """Push notifier double: records calls; can fail, raise, expire or stall."""

    def __init__(self) -> None:
        self.calls: List[Tuple[PushSubscription, Dict[str, Any]]] = []
        self.raise_for: Set[str] = set()     # endpoints that raise
        self.fail_for: Set[str] = set()      # endpoints that return failure
        self.expired_for: Set[str] = set()   # endpoints reported gone (410)
        self.delay: float = 0.0

    async def send_push(
        self, subscription: PushSubscription, payload: Dict[str, Any],
    ) -> NotifierResult:
        self.calls.append((subscription, payload))
        if self.delay:
            await asyncio.sleep(self.delay)
        if subscription.endpoint in self.raise_for:
            raise RuntimeError("push service exploded")
        if subscription.endpoint in self.expired_for:
            return NotifierResult.failure("subscription expired", status=410, expired=True)
        if subscription.endpoint in self.fail_for:
            return NotifierResult.failure("push rejected", status=500)
        return NotifierResult.success(mode="test")


class RecordingEmailNotifier:
    def __init__(self) -> None:
        self.calls: List[Tuple[str, str, str]] = []
        self.fail_for: Set[str] = set()

    async def send_email(self, address: str, subject: str, body: str) -> NotifierResult:
        self.calls.append((address, subject, body))
        if address in self.fail_for:
            return NotifierResult.failure("mailbox unavailable")
        return NotifierResult.success(mode="test", to=address)


@pytest.fixture
def stores():
    return create_memory_stores()


@pytest.fixture
def fast_retry() -> RetryConfig:
    return RetryConfig(max_retries=2, backoff_base_seconds=0.0)


@pytest.fixture
def push_notifier() -> RecordingPushNotifier:
    return RecordingPushNotifier()


@pytest.fixture
def email_notifier() -> RecordingEmailNotifier:
    return RecordingEmailNotifier()


def subscription_for(name: str) -> PushSubscription:
    return PushSubscription(
        endpoint=f"https://push.example.com/{name}", p256dh="p256dh-key", auth="auth-secret",
    )


@pytest.fixture
def make_subscription():
    return subscription_for


@pytest.fixture
def sql_url() -> str:
    return "sqlite+aiosqlite:///:memory:"


@pytest.fixture
def seed_record():
    """Write a record into a memory ledger as-is, skipping the duplicate check."""
    def seed(ledger, record: NotificationRecord) -> None:
        ledger._records[record.id] = copy.deepcopy(record)
    return seed
