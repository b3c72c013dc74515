"""
Health checks for Kubernetes liveness and readiness probes.

- Liveness: is the process alive? No I/O.
- Readiness: can the metering store answer a query? Quota checks fail closed
  when the store is down, so an instance without its store should not
  receive traffic.
"""

import time
from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field

from meterly.observability.logging import get_logger
from meterly.resilience.circuit_breakers import get_stripe_breaker
from meterly.storage.database import MeteringDatabase

logger = get_logger(__name__)


class HealthStatus(str, Enum):
    """Health status enumeration."""

    HEALTHY = "healthy"  # All checks passed
    DEGRADED = "degraded"  # Some non-critical checks failed
    UNHEALTHY = "unhealthy"  # Critical checks failed


class ComponentHealth(BaseModel):
    """Health status of a single component."""

    name: str
    status: HealthStatus
    message: str | None = Field(default=None)
    latency_ms: float | None = Field(default=None)
    last_check: datetime


class LivenessResponse(BaseModel):
    status: str = Field(default="alive")
    timestamp: datetime
    uptime_seconds: float


class ReadinessResponse(BaseModel):
    """Readiness probe response with dependency checks."""

    status: HealthStatus
    timestamp: datetime
    ready: bool
    components: list[ComponentHealth]


class HealthChecker:
    """Health check coordinator; tracks uptime."""

    def __init__(self):
        self.start_time = time.time()

    def get_uptime_seconds(self) -> float:
        return time.time() - self.start_time

    async def check_liveness(self) -> LivenessResponse:
        """Liveness probe. Only fails if the process is dead."""
        return LivenessResponse(
            timestamp=datetime.now(UTC),
            uptime_seconds=round(self.get_uptime_seconds(), 3),
        )

    async def check_readiness(self, db: MeteringDatabase | None) -> ReadinessResponse:
        """
        Readiness probe.

        The metering store is critical. The Stripe breaker is reported but
        only degrades readiness: quota and usage never call Stripe.
        """
        components = [await self._check_store(db), self._check_billing_provider()]

        if components[0].status == HealthStatus.UNHEALTHY:
            overall = HealthStatus.UNHEALTHY
        elif any(c.status != HealthStatus.HEALTHY for c in components):
            overall = HealthStatus.DEGRADED
        else:
            overall = HealthStatus.HEALTHY

        return ReadinessResponse(
            status=overall,
            timestamp=datetime.now(UTC),
            ready=overall != HealthStatus.UNHEALTHY,
            components=components,
        )

    async def _check_store(self, db: MeteringDatabase | None) -> ComponentHealth:
        start_time = time.perf_counter()
        if db is None:
            return ComponentHealth(
                name="metering_store",
                status=HealthStatus.UNHEALTHY,
                message="Store not initialized",
                last_check=datetime.now(UTC),
            )

        healthy = await db.ping()
        latency_ms = round((time.perf_counter() - start_time) * 1000, 2)
        if not healthy:
            logger.error("Metering store health check failed", latency_ms=latency_ms)

        return ComponentHealth(
            name="metering_store",
            status=HealthStatus.HEALTHY if healthy else HealthStatus.UNHEALTHY,
            message="Store responsive" if healthy else "Store query failed",
            latency_ms=latency_ms,
            last_check=datetime.now(UTC),
        )

    def _check_billing_provider(self) -> ComponentHealth:
        state = get_stripe_breaker().current_state
        return ComponentHealth(
            name="billing_provider",
            status=HealthStatus.HEALTHY if state == "closed" else HealthStatus.DEGRADED,
            message=f"circuit {state}",
            last_check=datetime.now(UTC),
        )


# Global health checker instance
_health_checker: HealthChecker | None = None


def get_health_checker() -> HealthChecker:
    global _health_checker
    if _health_checker is None:
        _health_checker = HealthChecker()
    return _health_checker
