"""
FastAPI dependencies shared by the v1 routers.
"""

from __future__ import annotations

import secrets
from typing import Optional

from fastapi import Header, Request

from geoalert.alerts.alert_service import AlertService
from geoalert.core.config import settings
from geoalert.core.errors import AuthorizationError

ADMIN_PRINCIPAL = "admin"


def get_service(request: Request) -> AlertService:
    """The AlertService opened by the application lifespan."""
    return request.app.state.service


async def require_admin(x_api_key: Optional[str] = Header(None, alias="X-API-Key")) -> str:
    """Gate admin routes on the ``X-API-Key`` header; returns the principal name."""
    if not x_api_key or not secrets.compare_digest(x_api_key, settings.ADMIN_API_KEY):
        raise AuthorizationError("Admin API key required")
    return ADMIN_PRINCIPAL
