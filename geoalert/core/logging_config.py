"""
Structured logging configuration.

Provides:
    • JSON-formatted logs for production (machine-parseable)
    • Pretty console logs for development (human-readable)
    • Request/job-scoped context (request_id, job run id)
    • Dispatch-aware extra fields (alert_id, user_id, record_id, channel)

Usage:
    from geoalert.core.logging_config import setup_logging, get_logger

    setup_logging()
    logger = get_logger(__name__)
    logger.info("Dispatch complete", extra={"alert_id": "a1", "matched": 12})
"""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from geoalert.core.config import settings

# ── Context variable for request/job-scoped data ──
_log_context: ContextVar[Dict[str, Any]] = ContextVar(
    "log_context", default={}
)

# Extra attributes copied onto JSON log entries when present
EXTRA_FIELDS = (
    "alert_id", "user_id", "record_id", "external_id", "channel",
    "matched", "sent", "failed", "skipped", "duration_ms",
    "status_code", "endpoint", "job", "run_id",
)


def set_log_context(**kwargs: Any) -> None:
    """Set scoped log context (call from middleware or job runners)."""
    _log_context.set(kwargs)


def get_log_context() -> Dict[str, Any]:
    """Get current log context."""
    return _log_context.get()


# ── JSON Formatter (Production) ──

class JSONFormatter(logging.Formatter):
    """Machine-parseable JSON log output for log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        ctx = get_log_context()
        if ctx:
            log_entry["context"] = ctx

        for key in EXTRA_FIELDS:
            if hasattr(record, key):
                log_entry[key] = getattr(record, key)

        if record.exc_info and record.exc_info[1]:
            log_entry["exception"] = {
                "type": type(record.exc_info[1]).__name__,
                "message": str(record.exc_info[1]),
            }

        return json.dumps(log_entry, default=str)


# ── Pretty Formatter (Development) ──

class PrettyFormatter(logging.Formatter):
    """Coloured human-readable format for local development."""

    COLORS = {
        "DEBUG": "\033[36m",    # Cyan
        "INFO": "\033[32m",     # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",    # Red
        "CRITICAL": "\033[35m", # Magenta
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, self.RESET)
        ts = self.formatTime(record, "%H:%M:%S")
        msg = record.getMessage()

        ctx = get_log_context()
        ctx_str = ""
        if ctx.get("request_id"):
            ctx_str = f" [{ctx['request_id'][:8]}]"
        elif ctx.get("run_id"):
            ctx_str = f" [job:{ctx['run_id']}]"

        formatted = (
            f"{color}{ts} {record.levelname:8s}{self.RESET}"
            f"{ctx_str} {record.name}: {msg}"
        )

        if record.exc_info and record.exc_info[1]:
            formatted += f"\n  {type(record.exc_info[1]).__name__}: {record.exc_info[1]}"

        return formatted


# ── Setup ──

def setup_logging(level: Optional[str] = None) -> None:
    """Configure logging based on environment."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO))

    root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)

    if settings.is_production:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(PrettyFormatter())

    root.addHandler(handler)

    # Quieten noisy libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a named logger — call once per module."""
    return logging.getLogger(name)
