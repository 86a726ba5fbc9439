"""
Centralised error handling — exception hierarchy + FastAPI handlers.

Provides:
    • Domain-specific exception classes
    • Consistent JSON error response format
    • Automatic logging of unhandled errors
    • Request context in error responses (non-production)

Error taxonomy for the alert core:

    Exception                  HTTP   Retried?   Typical origin
    ─────────────────────────  ────   ────────   ─────────────────────────────
    ValidationError            422    never      malformed geography, inverted
                                                 validity window
    DuplicatePendingError      409    —          ledger create for a pair that
                                                 already has a live record
                                                 (benign: dispatch skips)
    InvalidTransitionError     409    never      illegal notification state move
    TransientIOError           503    bounded    store / transport unavailable
    UnsupportedGeographyError  501    never      polygon geography in a
                                                 radius computation
    ConsistencyWarning         —      —          stored status disagrees with
                                                 computed validity (logged only)

Usage:
    from geoalert.core.errors import NotFoundError, register_error_handlers

    raise NotFoundError("Alert", id="a1b2c3")
"""

from __future__ import annotations

import logging
import traceback
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from geoalert.core.config import settings

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Exception Hierarchy
# ═══════════════════════════════════════════════════════════════════════════

class GeoAlertError(Exception):
    """Base exception for all application errors."""

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        *,
        status_code: int = 500,
        error_code: str = "INTERNAL_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.error_code, "message": self.message, "details": self.details}


class NotFoundError(GeoAlertError):
    """Resource not found (404)."""

    def __init__(self, resource: str, **identifiers: Any):
        details = {"resource": resource, **identifiers}
        super().__init__(
            message=f"{resource} not found",
            status_code=404,
            error_code="NOT_FOUND",
            details=details,
        )


class ValidationError(GeoAlertError):
    """Input validation failed (422)."""

    def __init__(self, message: str, *, field: Optional[str] = None, **details: Any):
        d = {**details}
        if field:
            d["field"] = field
        super().__init__(
            message=message,
            status_code=422,
            error_code="VALIDATION_ERROR",
            details=d,
        )


class DuplicatePendingError(GeoAlertError):
    """A non-terminal notification already exists for (user, alert) (409)."""

    def __init__(self, user_id: str, alert_id: str, existing: Any = None):
        super().__init__(
            message=(
                f"Notification already in flight for user {user_id} "
                f"and alert {alert_id}"
            ),
            status_code=409,
            error_code="DUPLICATE_PENDING",
            details={"user_id": user_id, "alert_id": alert_id},
        )
        self.user_id = user_id
        self.alert_id = alert_id
        self.existing = existing


class InvalidTransitionError(GeoAlertError):
    """Notification state machine rejected a transition (409)."""

    def __init__(self, record_id: str, current: str, action: str):
        super().__init__(
            message=f"Cannot {action} notification {record_id} in state '{current}'",
            status_code=409,
            error_code="INVALID_TRANSITION",
            details={"record_id": record_id, "status": current, "action": action},
        )


class TransientIOError(GeoAlertError):
    """Store or transport temporarily unavailable (503)."""

    def __init__(self, service: str, message: str = "", **details: Any):
        super().__init__(
            message=f"Service '{service}' unavailable: {message}",
            status_code=503,
            error_code="SERVICE_UNAVAILABLE",
            details={"service": service, **details},
        )


class UnsupportedGeographyError(GeoAlertError):
    """Geography variant has no matching logic (501)."""

    def __init__(self, kind: str, operation: str = "radius matching"):
        super().__init__(
            message=f"{kind} geography is not supported for {operation}",
            status_code=501,
            error_code="UNSUPPORTED_GEOGRAPHY",
            details={"geography": kind, "operation": operation},
        )


class AuthorizationError(GeoAlertError):
    """Caller lacks the role required for an operation (403)."""

    def __init__(self, message: str = "Admin role required"):
        super().__init__(
            message=message,
            status_code=403,
            error_code="FORBIDDEN",
        )


class ConsistencyWarning(UserWarning):
    """Denormalized alert status disagrees with its validity window."""

    def __init__(self, alert_id: str, stored_status: str, computed_active: bool):
        super().__init__(
            f"Alert {alert_id} has status '{stored_status}' but is "
            f"{'active' if computed_active else 'not active'} by validity window"
        )
        self.alert_id = alert_id
        self.stored_status = stored_status
        self.computed_active = computed_active


# ═══════════════════════════════════════════════════════════════════════════
# Error Response Builder
# ═══════════════════════════════════════════════════════════════════════════

def _build_error_response(
    status_code: int,
    error_code: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    request: Optional[Request] = None,
) -> JSONResponse:
    """Build a consistent JSON error response."""
    body: Dict[str, Any] = {
        "error": {
            "code": error_code,
            "message": message,
            "status": status_code,
        }
    }

    if details:
        body["error"]["details"] = details

    # Include request path in non-production
    if request and not settings.is_production:
        body["error"]["path"] = str(request.url.path)
        body["error"]["method"] = request.method

    return JSONResponse(status_code=status_code, content=body)


# ═══════════════════════════════════════════════════════════════════════════
# FastAPI Exception Handlers
# ═══════════════════════════════════════════════════════════════════════════

def register_error_handlers(app: FastAPI) -> None:
    """Register all exception handlers on the FastAPI app."""

    @app.exception_handler(GeoAlertError)
    async def handle_geoalert_error(request: Request, exc: GeoAlertError):
        log = logger.warning if exc.status_code < 500 else logger.error
        log(
            "API Error [%s]: %s | details=%s",
            exc.error_code, exc.message, exc.details,
        )
        return _build_error_response(
            exc.status_code, exc.error_code, exc.message,
            exc.details, request,
        )

    @app.exception_handler(Exception)
    async def handle_unhandled(request: Request, exc: Exception):
        logger.critical(
            "Unhandled exception: %s\n%s",
            exc, traceback.format_exc(),
        )
        message = str(exc) if settings.DEBUG else "Internal server error"
        details = (
            {"traceback": traceback.format_exc().split("\n")}
            if settings.DEBUG else None
        )
        return _build_error_response(
            500, "INTERNAL_ERROR", message, details, request,
        )
