"""
Request middleware: correlation IDs, resource tagging and access logging.

Every request gets:
    • an X-Request-ID (the caller's, or a fresh one) echoed on the response
    • an X-Process-Time header
    • a log context carrying the request id plus the alert / user / record
      id named in the path, so store and dispatch logs emitted while serving
      it can be traced back to the resource
    • one access log line (skipped for docs and liveness polling)
"""

from __future__ import annotations

import logging
import re
import time
import uuid
from typing import Dict, Pattern, Tuple

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from geoalert.core.logging_config import set_log_context

logger = logging.getLogger(__name__)

_QUIET_PREFIXES = ("/docs", "/redoc", "/openapi", "/favicon", "/health/live")

# Collection routes that share the /alerts/{segment} shape with alert ids
_ALERT_COLLECTION_ROUTES = "nearby|ingest|sweep|stats"

_RESOURCE_ROUTES: Tuple[Pattern[str], ...] = (
    re.compile(r"^/api/v1/alerts/nearby/users/(?P<user_id>[^/]+)$"),
    re.compile(
        rf"^/api/v1/alerts/(?!(?:{_ALERT_COLLECTION_ROUTES})(?:/|$))"
        r"(?P<alert_id>[^/]+)(?:/dispatch)?$"
    ),
    re.compile(r"^/api/v1/notifications/(?P<record_id>[^/]+)/(?:delivered|read)$"),
)


def resource_ids(path: str) -> Dict[str, str]:
    """Alert, user or record id addressed by ``path``; empty for collection routes."""
    for pattern in _RESOURCE_ROUTES:
        match = pattern.match(path)
        if match:
            return match.groupdict()
    return {}


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Tag each request with a correlation ID and its resource, then log it."""

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:16]
        client_ip = request.client.host if request.client else "unknown"
        path = request.url.path
        tags = resource_ids(path)

        set_log_context(request_id=request_id, endpoint=path, method=request.method, **tags)
        start = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception:
            duration_ms = (time.perf_counter() - start) * 1000
            logger.error(
                "%s %s → 500 (%.1fms) [%s]",
                request.method, path, duration_ms, client_ip,
                extra={"duration_ms": duration_ms, "status_code": 500, **tags},
            )
            set_log_context()
            raise

        duration_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = f"{duration_ms:.1f}ms"

        if not path.startswith(_QUIET_PREFIXES):
            level = logging.WARNING if response.status_code >= 400 else logging.INFO
            logger.log(
                level,
                "%s %s → %d (%.1fms) [%s]",
                request.method, path, response.status_code, duration_ms, client_ip,
                extra={
                    "duration_ms": duration_ms,
                    "status_code": response.status_code,
                    "endpoint": path,
                    **tags,
                },
            )

        set_log_context()
        return response
