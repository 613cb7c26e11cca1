"""
Health Monitor
==============
Concurrent dependency health probing.

Features:
- Registry of named async boolean probes, frozen after startup
- Fan-out/fan-in assessment with a per-probe timeout
- Probe failures recorded as unhealthy, never raised
- System health report with per-service latency
"""

import asyncio
import time
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, Optional

from loguru import logger
from pydantic import BaseModel, Field

from govchat.resilience.errors import HealthProbeError


HealthProbe = Callable[[], Awaitable[bool]]


class HealthStatus(str, Enum):
    """Health status levels."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


class ProbeResult(BaseModel):
    """Outcome of one probe invocation."""
    name: str
    healthy: bool
    latency_ms: float = 0.0
    error: Optional[str] = None
    checked_at: datetime = Field(default_factory=datetime.now)

    @property
    def status(self) -> HealthStatus:
        return HealthStatus.HEALTHY if self.healthy else HealthStatus.UNHEALTHY


class SystemHealth(BaseModel):
    """Aggregated health report."""
    status: HealthStatus = HealthStatus.UNKNOWN
    timestamp: datetime = Field(default_factory=datetime.now)
    services: dict[str, dict] = Field(default_factory=dict)
    uptime_sec: float = 0.0


class HealthAggregator:
    """
    Runs registered health probes concurrently.

    Usage:
        aggregator = HealthAggregator(probe_timeout_sec=3.0)
        aggregator.register_check("persistence-store", store.ping)
        aggregator.register_check("upstream-agent", agent_probe)

        health = await aggregator.assess()
        # {"persistence-store": True, "upstream-agent": False}
    """

    def __init__(self, probe_timeout_sec: float = 3.0):
        """
        Initialize health aggregator.

        Args:
            probe_timeout_sec: Per-probe deadline; a slower probe counts as unhealthy
        """
        self.probe_timeout_sec = probe_timeout_sec

        self._checks: dict[str, HealthProbe] = {}
        self._frozen = False
        self._latest: dict[str, ProbeResult] = {}
        self._started = time.monotonic()

    def register_check(self, name: str, probe: HealthProbe) -> None:
        """
        Register a probe. Only allowed before the first assessment.

        Raises:
            RuntimeError: If the registry is already frozen
            ValueError: If the name is already registered
        """
        if self._frozen:
            raise RuntimeError(f"Cannot register '{name}': health checks are frozen")
        if name in self._checks:
            raise ValueError(f"Health check '{name}' already registered")
        self._checks[name] = probe
        logger.debug("Registered health check '{}'", name)

    def freeze(self) -> None:
        """Lock the registry. Called at startup or on first assessment."""
        self._frozen = True

    async def assess(self) -> dict[str, bool]:
        """
        Invoke every probe concurrently and merge the results.

        Returns:
            Mapping of check name to healthy flag
        """
        self.freeze()

        results = await asyncio.gather(
            *(self._run_probe(name, probe) for name, probe in self._checks.items())
        )

        # Replace the snapshot in one assignment once every probe settled
        self._latest = {result.name: result for result in results}
        return {result.name: result.healthy for result in results}

    async def _run_probe(self, name: str, probe: HealthProbe) -> ProbeResult:
        start = time.perf_counter()
        try:
            healthy = bool(await asyncio.wait_for(probe(), timeout=self.probe_timeout_sec))
            error = None if healthy else "probe reported unhealthy"

        except asyncio.TimeoutError:
            healthy = False
            error = str(HealthProbeError(f"probe timed out after {self.probe_timeout_sec:.1f}s"))

        except Exception as e:
            healthy = False
            error = str(HealthProbeError(f"{type(e).__name__}: {e}", service=name))

        latency_ms = (time.perf_counter() - start) * 1000

        if not healthy:
            logger.bind(service=name, event="health_check_failed").warning(
                "Health check failed [{}]: {}", name, error
            )

        return ProbeResult(name=name, healthy=healthy, latency_ms=latency_ms, error=error)

    def latest(self) -> dict[str, bool]:
        """Results of the most recent assessment (empty before the first)."""
        return {name: result.healthy for name, result in self._latest.items()}

    async def get_system_health(self) -> SystemHealth:
        """
        Run a fresh assessment and build a report.

        Returns:
            SystemHealth with overall status and per-service detail
        """
        health = await self.assess()
        return SystemHealth(
            status=self._determine_status(health),
            services={
                name: {
                    "status": result.status.value,
                    "latency_ms": round(result.latency_ms, 2),
                    "error": result.error,
                }
                for name, result in self._latest.items()
            },
            uptime_sec=time.monotonic() - self._started,
        )

    def _determine_status(self, health: dict[str, bool]) -> HealthStatus:
        """Determine health status from probe results."""
        if not health:
            return HealthStatus.UNKNOWN

        healthy = sum(1 for ok in health.values() if ok)

        if healthy == len(health):
            return HealthStatus.HEALTHY

        if healthy == 0:
            return HealthStatus.UNHEALTHY

        return HealthStatus.DEGRADED
