"""
dispatch.py — Exactly-once notification dispatch for one alert.

═══════════════════════════════════════════════════════════════════════════
PER-ALERT RUN
═══════════════════════════════════════════════════════════════════════════

    1. affected = MatchEngine.find_affected_users(alert)   (alert's radius)
    2. for each user, at most DISPATCH_CONCURRENCY at a time:
         a. ledger.create(...)        DuplicatePendingError → claim or skip
         b. deliver on the primary channel, email alongside push
         c. mark_sent / mark_failed   (one attempt per run)
    3. DispatchSummary{matched, sent, failed, skipped, resumed, errors}

═══════════════════════════════════════════════════════════════════════════
CHANNEL SELECTION
═══════════════════════════════════════════════════════════════════════════

    Channel   Eligible when
    ───────   ─────────────────────────────────────────────────────────
    push      subscription bound AND push preference AND push notifier
    email     email preference AND email notifier AND address on file
    in-app    always (record type "alert")

The primary channel is the first eligible of push → email → in-app and
its outcome drives the record's state. When push is primary, the email
outcome is stored in ``channel_results`` and never changes the status.

═══════════════════════════════════════════════════════════════════════════
RESUMPTION
═══════════════════════════════════════════════════════════════════════════

Every record carries a lease (``lease_expires_at``, DISPATCH_STALE_AFTER_SECONDS
long). ``create`` leases the new record to its creator; mark_sent and
mark_failed drop the lease; a run interrupted by its deadline or by
cancellation releases it. An existing non-terminal record is resumed only
through ``ledger.claim``, which succeeds when the record is

    pending, no live lease              (previous run cancelled or died)
    failed, attempts < max              (reopened, then re-attempted)

and renews the lease in the same atomic step. A losing claim, a live lease,
or a sent/delivered record means skip. The ledger therefore serialises
attempts across coordinators and processes; the in-process pair lock only
keeps runs inside one coordinator from racing to the ledger.
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from geoalert.alerts.channels import (
    EmailNotifier,
    NotifierResult,
    PushNotifier,
    guarded_send,
)
from geoalert.alerts.channels.email_alert import build_html_body, build_subject
from geoalert.alerts.channels.web_push import build_push_payload
from geoalert.alerts.matching import MatchEngine
from geoalert.alerts.models import (
    MESSAGE_MAX_LENGTH,
    PRIORITY_BY_SEVERITY,
    TITLE_MAX_LENGTH,
    Alert,
    AlertStatus,
    NotificationRecord,
    NotificationType,
    User,
    utc_now,
)
from geoalert.alerts.validity import is_expired_at
from geoalert.core.config import settings
from geoalert.core.errors import DuplicatePendingError, GeoAlertError, InvalidTransitionError
from geoalert.storage.base import NotificationLedger, RetryConfig, UserStore, call_with_retry

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Results
# ═══════════════════════════════════════════════════════════════════════════

class PairOutcome(str, Enum):
    SENT    = "sent"
    FAILED  = "failed"
    SKIPPED = "skipped"
    ERROR   = "error"   # store failure; record (if any) left resumable


@dataclass
class DispatchSummary:
    alert_id: str
    matched: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    resumed: int = 0
    errors: int = 0
    cancelled: bool = False
    reason: Optional[str] = None
    duration_ms: float = 0.0
    outcomes: Dict[str, str] = field(default_factory=dict)

    def tally(self, user_id: str, outcome: PairOutcome, resumed: bool) -> None:
        self.outcomes[user_id] = outcome.value
        if outcome == PairOutcome.SENT:
            self.sent += 1
        elif outcome == PairOutcome.FAILED:
            self.failed += 1
        elif outcome == PairOutcome.SKIPPED:
            self.skipped += 1
        else:
            self.errors += 1
        if resumed:
            self.resumed += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "alert_id": self.alert_id,
            "matched": self.matched,
            "sent": self.sent,
            "failed": self.failed,
            "skipped": self.skipped,
            "resumed": self.resumed,
            "errors": self.errors,
            "cancelled": self.cancelled,
            "reason": self.reason,
            "duration_ms": round(self.duration_ms, 1),
        }


@dataclass
class _ChannelPlan:
    primary: NotificationType
    email_alongside: bool


@dataclass
class _PairLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    holders: int = 0


def _clip(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[: limit - 1].rstrip() + "…"


# ═══════════════════════════════════════════════════════════════════════════
# Coordinator
# ═══════════════════════════════════════════════════════════════════════════

class DispatchCoordinator:
    """Turns a stored alert into ledger records and notifier calls."""

    def __init__(
        self,
        matcher: MatchEngine,
        ledger: NotificationLedger,
        users: UserStore,
        *,
        push_notifier: Optional[PushNotifier] = None,
        email_notifier: Optional[EmailNotifier] = None,
        concurrency: Optional[int] = None,
        stale_after_seconds: Optional[float] = None,
        retry: Optional[RetryConfig] = None,
    ) -> None:
        self._matcher = matcher
        self._ledger = ledger
        self._users = users
        self._push = push_notifier
        self._email = email_notifier
        self._concurrency = concurrency or settings.DISPATCH_CONCURRENCY
        self._stale_after = (
            settings.DISPATCH_STALE_AFTER_SECONDS
            if stale_after_seconds is None else stale_after_seconds
        )
        self._retry = retry or RetryConfig()
        self._pair_locks: Dict[Tuple[str, str], _PairLock] = {}

    # ── Public API ──

    async def dispatch(self, alert: Alert, timeout: Optional[float] = None) -> DispatchSummary:
        """
        Dispatch one alert to every affected user.

        Parameters
        ----------
        alert : Alert
            The stored (post-upsert) alert.
        timeout : float | None
            Deadline in seconds. Users still outstanding at the deadline
            are cancelled; their records stay pending for the next run.

        Returns
        -------
        DispatchSummary
        """
        started = time.perf_counter()
        summary = DispatchSummary(alert_id=alert.id)

        if alert.status == AlertStatus.INACTIVE or is_expired_at(alert, utc_now()):
            summary.reason = "alert is not dispatchable (inactive or expired)"
            logger.info("Alert %s: %s", alert.id, summary.reason, extra={"alert_id": alert.id})
            return summary

        users = await call_with_retry(
            self._matcher.find_affected_users, alert, config=self._retry,
        )
        summary.matched = len(users)
        if users:
            await self._run_all(alert, users, summary, timeout)

        summary.duration_ms = (time.perf_counter() - started) * 1000
        logger.info(
            "Alert %s dispatch complete: %d matched, %d sent, %d failed, %d skipped, "
            "%d resumed, %d errors%s (%.1fms)",
            alert.id, summary.matched, summary.sent, summary.failed, summary.skipped,
            summary.resumed, summary.errors,
            " [deadline hit]" if summary.cancelled else "",
            summary.duration_ms,
            extra={
                "alert_id": alert.id,
                "matched": summary.matched,
                "sent": summary.sent,
                "failed": summary.failed,
                "skipped": summary.skipped,
                "duration_ms": summary.duration_ms,
            },
        )
        return summary

    # ── Fan-out ──

    async def _run_all(
        self,
        alert: Alert,
        users: List[User],
        summary: DispatchSummary,
        timeout: Optional[float],
    ) -> None:
        semaphore = asyncio.Semaphore(self._concurrency)
        tasks = {
            asyncio.create_task(self._dispatch_guarded(alert, user, semaphore)): user
            for user in users
        }
        try:
            done, pending = await asyncio.wait(tasks, timeout=timeout)
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        if pending:
            summary.cancelled = True
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning(
                "Alert %s: deadline of %.1fs hit, %d users left for the next run",
                alert.id, timeout, len(pending), extra={"alert_id": alert.id},
            )

        for task in done:
            outcome, resumed = task.result()
            summary.tally(tasks[task].id, outcome, resumed)

    @asynccontextmanager
    async def _pair_lock(self, user_id: str, alert_id: str) -> AsyncIterator[None]:
        key = (user_id, alert_id)
        entry = self._pair_locks.get(key)
        if entry is None:
            entry = self._pair_locks[key] = _PairLock()
        entry.holders += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.holders -= 1
            if entry.holders == 0:
                self._pair_locks.pop(key, None)

    async def _dispatch_guarded(
        self, alert: Alert, user: User, semaphore: asyncio.Semaphore,
    ) -> Tuple[PairOutcome, bool]:
        async with semaphore:
            async with self._pair_lock(user.id, alert.id):
                try:
                    return await self._dispatch_one(alert, user)
                except Exception as exc:
                    logger.error(
                        "Dispatch of alert %s to user %s aborted: %s",
                        alert.id, user.id, exc,
                        exc_info=True,
                        extra={"alert_id": alert.id, "user_id": user.id},
                    )
                    return PairOutcome.ERROR, False

    # ── One (user, alert) pair ──

    def _plan(self, user: User) -> _ChannelPlan:
        email_ok = (
            user.preferences.email_notifications
            and self._email is not None
            and bool(user.email)
        )
        push_ok = (
            user.push_subscription is not None
            and user.preferences.push_notifications
            and self._push is not None
        )
        if push_ok:
            return _ChannelPlan(NotificationType.PUSH, email_alongside=email_ok)
        if email_ok:
            return _ChannelPlan(NotificationType.EMAIL, email_alongside=False)
        return _ChannelPlan(NotificationType.ALERT, email_alongside=False)

    async def _acquire_record(
        self, alert: Alert, user: User, plan: _ChannelPlan,
    ) -> Tuple[Optional[NotificationRecord], bool]:
        """New record, a claimed resumable one, or (None, False) to skip."""
        try:
            record = await call_with_retry(
                self._ledger.create,
                user.id,
                alert.id,
                plan.primary,
                _clip(alert.title, TITLE_MAX_LENGTH),
                _clip(alert.description, MESSAGE_MAX_LENGTH),
                PRIORITY_BY_SEVERITY[alert.severity],
                self._stale_after,
                config=self._retry,
            )
            return record, False
        except DuplicatePendingError as dup:
            existing = dup.existing
            if existing is None or not existing.is_resumable(utc_now()):
                logger.debug(
                    "Skipping user %s for alert %s: record already in flight",
                    user.id, alert.id, extra={"alert_id": alert.id, "user_id": user.id},
                )
                return None, False

        try:
            claimed = await call_with_retry(
                self._ledger.claim, existing.id, self._stale_after, config=self._retry,
            )
        except InvalidTransitionError:
            logger.debug(
                "Skipping user %s for alert %s: record %s claimed by another run",
                user.id, alert.id, existing.id,
                extra={"alert_id": alert.id, "user_id": user.id, "record_id": existing.id},
            )
            return None, False
        logger.info(
            "Resuming notification %s (attempts=%d)",
            claimed.id, claimed.delivery_attempts,
            extra={"record_id": claimed.id, "alert_id": alert.id, "user_id": user.id},
        )
        return claimed, True

    async def _dispatch_one(self, alert: Alert, user: User) -> Tuple[PairOutcome, bool]:
        plan = self._plan(user)
        record, resumed = await self._acquire_record(alert, user, plan)
        if record is None:
            return PairOutcome.SKIPPED, False

        try:
            primary, email_result = await self._deliver(alert, user, plan)
        except asyncio.CancelledError:
            await self._release(record)
            raise

        if email_result is not None:
            await call_with_retry(
                self._ledger.record_channel_result,
                record.id, "email", email_result.to_dict(),
                config=self._retry,
            )

        if primary.provider_response.get("expired") and user.push_subscription is not None:
            await call_with_retry(
                self._users.update_subscription, user.id, None, config=self._retry,
            )

        if primary.ok:
            await call_with_retry(self._ledger.mark_sent, record.id, config=self._retry)
            return PairOutcome.SENT, resumed

        record = await call_with_retry(
            self._ledger.mark_failed, record.id, primary.message, config=self._retry,
        )
        logger.warning(
            "Notification %s failed via %s (attempt %d/%d): %s",
            record.id, plan.primary.value, record.delivery_attempts,
            record.max_attempts, primary.message,
            extra={
                "record_id": record.id,
                "alert_id": alert.id,
                "user_id": user.id,
                "channel": plan.primary.value,
            },
        )
        return PairOutcome.FAILED, resumed

    async def _release(self, record: NotificationRecord) -> None:
        """Hand an interrupted record back so the next run resumes it at once."""
        try:
            await self._ledger.release(record.id)
        except GeoAlertError as exc:
            logger.warning(
                "Lease on notification %s kept until expiry: %s", record.id, exc.message,
                extra={"record_id": record.id},
            )

    async def _deliver(
        self, alert: Alert, user: User, plan: _ChannelPlan,
    ) -> Tuple[NotifierResult, Optional[NotifierResult]]:
        """(primary outcome, email outcome when email rides alongside push)."""
        if plan.primary == NotificationType.PUSH:
            sends = [guarded_send(
                "push", self._push.send_push, user.push_subscription, build_push_payload(alert),
            )]
            if plan.email_alongside:
                sends.append(self._send_email(alert, user))
            results = await asyncio.gather(*sends)
            return results[0], (results[1] if plan.email_alongside else None)

        if plan.primary == NotificationType.EMAIL:
            return await self._send_email(alert, user), None

        return NotifierResult.success("in-app", mode="in_app"), None

    def _send_email(self, alert: Alert, user: User):
        return guarded_send(
            "email", self._email.send_email,
            user.email, build_subject(alert), build_html_body(alert),
        )
