"""
email_alert.py — Email alert delivery channel.

Delivery mechanism:
    • SMTP via smtplib (STARTTLS + login when credentials are set)
    • HTML body

═══════════════════════════════════════════════════════════════════════════
EMAIL TEMPLATE STRUCTURE
═══════════════════════════════════════════════════════════════════════════

    Subject: 🚨 [HIGH] Flood Alert: {title}
    Body:
        ┌─────────────────────────────────────────┐
        │  FLOOD ALERT — HIGH                      │
        ├─────────────────────────────────────────┤
        │  {description}                           │
        │  Area: {city} · {radius} km radius       │
        │  Valid until: {valid_until}              │
        │  Safety instructions (if any)            │
        │  [View Details]                          │
        └─────────────────────────────────────────┘
"""

from __future__ import annotations

import asyncio
import html
import logging
import smtplib
from email.mime.text import MIMEText
from typing import Optional

from geoalert.alerts.channels import NotifierResult
from geoalert.alerts.models import Alert, Severity
from geoalert.core.config import settings

logger = logging.getLogger(__name__)

# Severity → emoji + colour for the subject and banner
_SEVERITY_ICONS = {
    Severity.LOW: "ℹ️",
    Severity.MEDIUM: "⚠️",
    Severity.HIGH: "🚨",
    Severity.CRITICAL: "🆘",
}

_SEVERITY_COLOURS = {
    Severity.LOW: "#4CAF50",       # green
    Severity.MEDIUM: "#FF9800",    # orange
    Severity.HIGH: "#F44336",      # red
    Severity.CRITICAL: "#B71C1C",  # dark red
}


def _type_label(alert: Alert) -> str:
    return alert.type.value.replace("_", " ").title()


def build_subject(alert: Alert) -> str:
    icon = _SEVERITY_ICONS.get(alert.severity, "⚠️")
    return f"{icon} [{alert.severity.name}] {_type_label(alert)} Alert: {alert.title}"


def build_html_body(alert: Alert) -> str:
    """Render a simple HTML email body."""
    colour = _SEVERITY_COLOURS.get(alert.severity, "#FF9800")
    area = html.escape(alert.city or alert.address or "your area")
    instructions = "".join(
        f"<li>{html.escape(step)}</li>" for step in alert.safety_instructions
    )
    instructions_block = f"<h4>What to do</h4><ul>{instructions}</ul>" if instructions else ""

    return f"""
    <div style="font-family:Arial,sans-serif;max-width:600px;margin:auto;">
      <div style="background:{colour};color:white;padding:16px;border-radius:8px 8px 0 0;">
        <h2 style="margin:0;">{_type_label(alert).upper()} ALERT — {alert.severity.name}</h2>
      </div>
      <div style="border:1px solid #ddd;border-top:none;padding:16px;border-radius:0 0 8px 8px;">
        <h3>{html.escape(alert.title)}</h3>
        <p>{html.escape(alert.description)}</p>
        <hr>
        <p><strong>Area:</strong> {area} · {alert.radius_km:g} km radius</p>
        <p><strong>Valid until:</strong> {alert.valid_until.strftime('%Y-%m-%d %H:%M UTC')}</p>
        {instructions_block}
        <a href="/alerts/{alert.id}"
           style="background:#555;color:white;padding:10px 20px;text-decoration:none;border-radius:4px;">
          View Details
        </a>
      </div>
    </div>
    """


class SmtpEmailNotifier:
    """Email notifier over SMTP (or a logging simulation)."""

    def __init__(
        self,
        provider: str = "simulation",
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        from_address: str = "alerts@geoalert.local",
        timeout_seconds: float = 20.0,
    ) -> None:
        if provider not in ("simulation", "smtp"):
            raise ValueError(f"Unknown email provider: {provider}")
        if provider == "smtp" and not smtp_host:
            raise ValueError("SMTP_HOST is required for the smtp provider")
        self.provider = provider
        self._host = smtp_host
        self._port = smtp_port
        self._user = smtp_user
        self._password = smtp_password
        self._from = from_address
        self._timeout = timeout_seconds

    async def send_email(self, address: str, subject: str, body: str) -> NotifierResult:
        if not address:
            return NotifierResult.failure("No email address on file")

        if self.provider == "simulation":
            logger.info(
                "[EMAIL] → %s: Subject='%s'", address, subject, extra={"channel": "email"},
            )
            return NotifierResult.success(mode="simulated", to=address, html_size=len(body))

        try:
            await asyncio.to_thread(self._send_smtp, address, subject, body)
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("[EMAIL/SMTP] Failed for %s: %s", address, exc)
            return NotifierResult.failure(str(exc), mode="smtp")
        return NotifierResult.success(mode="smtp", to=address)

    def _send_smtp(self, address: str, subject: str, body: str) -> None:
        msg = MIMEText(body, "html", "utf-8")
        msg["Subject"] = subject
        msg["From"] = self._from
        msg["To"] = address

        with smtplib.SMTP(self._host, self._port, timeout=self._timeout) as server:
            server.starttls()
            if self._user and self._password:
                server.login(self._user, self._password)
            server.sendmail(self._from, [address], msg.as_string())


def create_email_notifier() -> Optional[SmtpEmailNotifier]:
    if settings.EMAIL_PROVIDER == "disabled":
        return None
    return SmtpEmailNotifier(
        settings.EMAIL_PROVIDER,
        smtp_host=settings.SMTP_HOST,
        smtp_port=settings.SMTP_PORT,
        smtp_user=settings.SMTP_USER,
        smtp_password=settings.SMTP_PASSWORD,
        from_address=settings.EMAIL_FROM,
    )
