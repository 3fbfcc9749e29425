"""
Health check aggregation — deep health probe for the alert service.

Checks:
    • Alert store reachability (memory or SQL)
    • Notification providers (which backend each channel uses)
    • Background dispatch backlog

Returns a structured health report suitable for:
    - Kubernetes liveness/readiness probes
    - Load balancer health checks
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List

from backend.app.core.config import settings

if TYPE_CHECKING:
    from backend.app.core.container import ServiceContainer

logger = logging.getLogger(__name__)

# Outstanding dispatch tasks above which the service reports DEGRADED
BACKLOG_WARN = 100


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


async def check_store(container: "ServiceContainer") -> ComponentHealth:
    """Round-trip a cheap query against the alert store."""
    comp = ComponentHealth(name="store")
    start = time.monotonic()
    try:
        await container.store.list_alerts(limit=1)
        comp.message = "Store reachable"
        comp.details = {"backend": settings.STORE_BACKEND}
    except Exception as e:
        logger.warning("Store health check failed: %s", e)
        comp.status = HealthStatus.UNHEALTHY
        comp.message = str(e)
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def check_providers(container: "ServiceContainer") -> ComponentHealth:
    """Report which provider backs each channel; simulation is degraded in production."""
    comp = ComponentHealth(name="providers")
    providers = {
        "sms": container.sms.name,
        "email": container.email.name,
        "push": container.push.name,
    }
    simulated = [ch for ch, name in providers.items() if name == "simulation"]
    if simulated and settings.is_production:
        comp.status = HealthStatus.DEGRADED
        comp.message = f"Simulated channels: {', '.join(simulated)}"
    else:
        comp.message = "Providers configured"
    comp.details = providers
    return comp


async def check_backlog(container: "ServiceContainer") -> ComponentHealth:
    comp = ComponentHealth(name="dispatch_backlog")
    pending = container.supervisor.pending
    comp.details = {"pending_tasks": pending}
    if pending > BACKLOG_WARN:
        comp.status = HealthStatus.DEGRADED
        comp.message = f"{pending} dispatch tasks outstanding"
    else:
        comp.message = f"{pending} pending"
    return comp


async def run_health_check(container: "ServiceContainer") -> HealthReport:
    """Run all health checks and aggregate into a report."""
    report = HealthReport(
        timestamp=datetime.now(timezone.utc).isoformat(),
        uptime_seconds=time.monotonic() - _start_time,
    )

    checks = [
        check_store(container),
        check_providers(container),
        check_backlog(container),
    ]

    # Run all checks
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
