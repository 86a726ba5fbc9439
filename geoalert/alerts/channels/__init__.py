"""
channels — Outbound notifier adapters.

Each notifier exposes an awaitable send method that returns a
``NotifierResult`` instead of raising:

    PushNotifier.send_push(subscription, payload) → NotifierResult
    EmailNotifier.send_email(address, subject, body) → NotifierResult

Retry policy lives in the dispatch coordinator; channels make one attempt.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, runtime_checkable

from geoalert.alerts.models import PushSubscription

logger = logging.getLogger(__name__)


@dataclass
class NotifierResult:
    """Outcome of a single send attempt."""
    ok: bool
    message: str = ""
    provider_response: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def success(cls, message: str = "sent", **response: Any) -> "NotifierResult":
        return cls(ok=True, message=message, provider_response=response)

    @classmethod
    def failure(cls, message: str, **response: Any) -> "NotifierResult":
        return cls(ok=False, message=message or "unknown error", provider_response=response)

    def to_dict(self) -> Dict[str, Any]:
        return {"ok": self.ok, "message": self.message, **self.provider_response}


@runtime_checkable
class PushNotifier(Protocol):
    async def send_push(
        self, subscription: PushSubscription, payload: Dict[str, Any],
    ) -> NotifierResult:
        ...


@runtime_checkable
class EmailNotifier(Protocol):
    async def send_email(self, address: str, subject: str, body: str) -> NotifierResult:
        ...


async def guarded_send(
    channel: str,
    send: Callable[..., Awaitable[NotifierResult]],
    *args: Any,
) -> NotifierResult:
    """Await a notifier call, folding any exception into a failure result."""
    try:
        result = await send(*args)
    except Exception as exc:
        logger.error("[%s] notifier raised: %s", channel.upper(), exc, extra={"channel": channel})
        return NotifierResult.failure(f"{type(exc).__name__}: {exc}")
    if not isinstance(result, NotifierResult):
        return NotifierResult.failure(f"{channel} notifier returned {type(result).__name__}")
    return result


def create_notifiers() -> "tuple[Optional[PushNotifier], Optional[EmailNotifier]]":
    """Notifiers for the configured providers (None when disabled)."""
    from geoalert.alerts.channels.email_alert import create_email_notifier
    from geoalert.alerts.channels.web_push import create_push_notifier

    return create_push_notifier(), create_email_notifier()
