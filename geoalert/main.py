"""
FastAPI application entry point.

Run with:
    uvicorn geoalert.main:app --reload --port 8000
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# ── Core infrastructure ──
from geoalert.core.config import settings
from geoalert.core.logging_config import setup_logging, get_logger
from geoalert.core.errors import register_error_handlers
from geoalert.core.middleware import RequestLoggingMiddleware
from geoalert.core.health import HealthStatus, run_health_check

# ── Service + jobs ──
from geoalert.alerts.alert_service import AlertService
from geoalert.jobs.background_jobs import BackgroundJobManager

# ── API routers ──
from geoalert.api.v1.alerts import router as alert_router
from geoalert.api.v1.notifications import router as notification_router

# ── Initialise logging ──
setup_logging()
logger = get_logger(__name__)


def create_app(service: Optional[AlertService] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Parameters
    ----------
    service : AlertService | None
        Pre-built service (tests inject one over in-memory stores). When
        omitted, the lifespan builds one from settings.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Open the store handle and start the scheduler; undo on shutdown."""
        logger.info(
            "Starting %s v%s [%s]",
            settings.APP_NAME, settings.APP_VERSION, settings.ENVIRONMENT,
        )
        svc = service or AlertService.from_settings()
        await svc.start()
        jobs = BackgroundJobManager(svc)
        app.state.service = svc
        app.state.jobs = jobs
        await jobs.start()
        try:
            yield
        finally:
            await jobs.stop()
            await svc.stop()
            logger.info("Shutting down %s", settings.APP_NAME)

    app = FastAPI(
        title=settings.APP_NAME,
        description=(
            "Geo-radius alert matching and notification dispatch. "
            "Stores time-bounded disaster alerts, answers nearby-alert queries, "
            "and notifies users inside an alert's radius exactly once over "
            "web push, email or in-app records."
        ),
        version=settings.APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # ── Middleware stack (order matters — outermost first) ──
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS if not settings.CORS_ALLOW_ALL else ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    # ── Error handlers ──
    register_error_handlers(app)

    # ── Register routers ──
    app.include_router(alert_router)
    app.include_router(notification_router)

    # ── Root & health endpoints ──

    @app.get("/", tags=["root"])
    async def root():
        return {
            "service": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "environment": settings.ENVIRONMENT,
            "modules": [
                "nearby-alerts",
                "alert-ingestion",
                "notification-dispatch",
                "expiry-sweep",
            ],
            "docs": "/docs",
        }

    @app.get("/health", tags=["health"])
    async def health_check(request: Request):
        """Deep health probe — checks all subsystems."""
        report = await run_health_check(request.app.state.service)
        return report.to_dict()

    @app.get("/health/live", tags=["health"])
    async def liveness():
        """Kubernetes liveness probe — is the process alive?"""
        return {"status": "alive"}

    @app.get("/health/ready", tags=["health"])
    async def readiness(request: Request):
        """Kubernetes readiness probe — can we serve traffic?"""
        report = await run_health_check(request.app.state.service)
        if report.status == HealthStatus.UNHEALTHY:
            return JSONResponse(status_code=503, content=report.to_dict())
        return report.to_dict()

    return app


app = create_app()
