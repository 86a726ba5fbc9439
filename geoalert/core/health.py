"""
Health check aggregation — deep health probe for all subsystems.

Checks:
    • Store connectivity (memory or SQL backend ping)
    • Notifier configuration (push / email providers)
    • Ingestion sources (weather API key present or mock mode)
    • Alert geographies (polygon alerts degrade nearby queries)

Returns a structured health report suitable for:
    - Kubernetes liveness/readiness probes
    - Load balancer health checks
    - Monitoring dashboards
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List

from geoalert.core.config import settings

if TYPE_CHECKING:
    from geoalert.alerts.alert_service import AlertService

logger = logging.getLogger(__name__)


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"  # partial functionality
    UNHEALTHY = "unhealthy"


@dataclass
class ComponentHealth:
    name: str
    status: HealthStatus = HealthStatus.HEALTHY
    latency_ms: float = 0.0
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "name": self.name,
            "status": self.status.value,
            "latency_ms": round(self.latency_ms, 2),
        }
        if self.message:
            d["message"] = self.message
        if self.details:
            d["details"] = self.details
        return d


@dataclass
class HealthReport:
    status: HealthStatus = HealthStatus.HEALTHY
    version: str = settings.APP_VERSION
    environment: str = settings.ENVIRONMENT
    timestamp: str = ""
    uptime_seconds: float = 0.0
    components: List[ComponentHealth] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "version": self.version,
            "environment": self.environment,
            "timestamp": self.timestamp or datetime.now(timezone.utc).isoformat(),
            "uptime_seconds": round(self.uptime_seconds, 1),
            "components": [c.to_dict() for c in self.components],
        }


# Track application start time
_start_time = time.monotonic()


def _redact(url: str) -> str:
    return url.split("@")[-1]


async def check_store(service: "AlertService") -> ComponentHealth:
    """Ping the alert/user/notification store backend."""
    comp = ComponentHealth(name=f"store:{service.stores.backend}")
    start = time.monotonic()
    try:
        await service.stores.ping()
        comp.status = HealthStatus.HEALTHY
        comp.message = "Store reachable"
        if service.stores.backend == "sql":
            comp.details = {"url": _redact(settings.DATABASE_URL)}
    except Exception as e:
        comp.status = HealthStatus.UNHEALTHY
        comp.message = str(e)
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def check_notifiers(service: "AlertService") -> ComponentHealth:
    """Report which delivery channels are wired up."""
    comp = ComponentHealth(name="notifiers")
    start = time.monotonic()

    channels = {
        "push": settings.PUSH_PROVIDER if service.push_notifier else "disabled",
        "email": settings.EMAIL_PROVIDER if service.email_notifier else "disabled",
    }
    comp.details = channels

    if all(provider == "disabled" for provider in channels.values()):
        comp.status = HealthStatus.DEGRADED
        comp.message = "No delivery channel; notifications stay in-app"
    elif "simulation" in channels.values():
        comp.status = HealthStatus.HEALTHY
        comp.message = "Simulation mode for at least one channel"
    else:
        comp.status = HealthStatus.HEALTHY
        comp.message = "Channels configured"
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def check_sources(service: "AlertService") -> ComponentHealth:
    """Describe the configured ingestion sources."""
    comp = ComponentHealth(name="ingestion_sources")
    start = time.monotonic()

    sources = {}
    for source in service.pipeline.sources:
        status = getattr(source, "status", None)
        sources[source.name] = status() if callable(status) else {"configured": True}
    comp.details = sources
    comp.status = HealthStatus.HEALTHY
    comp.message = f"{len(sources)} source(s)"
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def check_geographies(service: "AlertService") -> ComponentHealth:
    """Flag stored polygon alerts, which nearby queries cannot evaluate."""
    comp = ComponentHealth(name="geographies")
    start = time.monotonic()
    try:
        stats = await service.stores.alerts.stats(datetime.now(timezone.utc))
        kinds = stats.get("by_geography", {})
        comp.details = kinds
        polygons = kinds.get("Polygon", 0)
        if polygons:
            comp.status = HealthStatus.DEGRADED
            comp.message = (
                f"{polygons} polygon alert(s) stored; nearby queries reaching "
                "one fail with UNSUPPORTED_GEOGRAPHY"
            )
        else:
            comp.status = HealthStatus.HEALTHY
            comp.message = "Point alerts only"
    except Exception as e:
        comp.status = HealthStatus.UNHEALTHY
        comp.message = str(e)
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def run_health_check(service: "AlertService") -> HealthReport:
    """Run all health checks and aggregate into a report."""
    report = HealthReport(
        timestamp=datetime.now(timezone.utc).isoformat(),
        uptime_seconds=time.monotonic() - _start_time,
    )

    checks = [
        check_store(service),
        check_notifiers(service),
        check_sources(service),
        check_geographies(service),
    ]

    for coro in checks:
        comp = await coro
        report.components.append(comp)

    # Aggregate status
    statuses = [c.status for c in report.components]
    if HealthStatus.UNHEALTHY in statuses:
        report.status = HealthStatus.UNHEALTHY
    elif HealthStatus.DEGRADED in statuses:
        report.status = HealthStatus.DEGRADED
    else:
        report.status = HealthStatus.HEALTHY

    return report
