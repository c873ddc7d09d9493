"""
Health Checker — Dispatch Engine Checks
=========================================

Aggregates named async checks into one verdict for ``/health``.

Checks:
  - workers: degraded while every worker slot is busy
  - queue:   degraded once the pending backlog passes a threshold

A check that raises or overruns its timeout counts as unhealthy; the
aggregate is the worst individual status.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from formrelay.infra.telemetry import get_logger

if TYPE_CHECKING:
    from formrelay.infra.runtime.orchestrator import DispatchOrchestrator

logger = get_logger(__name__)

CHECK_TIMEOUT_S = 5.0
DEFAULT_BACKLOG_THRESHOLD = 500


class HealthStatus(StrEnum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


_SEVERITY = {HealthStatus.HEALTHY: 0, HealthStatus.DEGRADED: 1, HealthStatus.UNHEALTHY: 2}


@dataclass
class HealthCheck:
    name: str
    status: HealthStatus
    latency_ms: float = 0.0
    message: str = ""
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "status": str(self.status),
            "latency_ms": round(self.latency_ms, 2),
            "message": self.message,
            "details": self.details,
        }


@dataclass
class SystemHealth:
    status: HealthStatus
    checks: list[HealthCheck]
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": str(self.status),
            "timestamp": self.timestamp,
            "checks": [c.to_dict() for c in self.checks],
        }


CheckFn = Callable[[], Awaitable[HealthCheck]]


class HealthChecker:
    """
    Runs registered checks concurrently and caches the verdict for ``cache_ttl_s``.

    Usage:
        checker = HealthChecker()
        register_dispatch_checks(checker, orchestrator)
        health = await checker.check()
    """

    def __init__(self, cache_ttl_s: float = 5.0) -> None:
        self._checks: dict[str, CheckFn] = {}
        self._cache_ttl_s = cache_ttl_s
        self._cached: tuple[float, SystemHealth] | None = None

    def register(self, name: str, check_fn: CheckFn) -> None:
        self._checks[name] = check_fn
        self._cached = None

    async def check(self, *, use_cache: bool = True) -> SystemHealth:
        if use_cache and self._cached is not None:
            taken_at, health = self._cached
            if time.monotonic() - taken_at < self._cache_ttl_s:
                return health

        results = await asyncio.gather(*(self._run(name, fn) for name, fn in self._checks.items()))
        worst = max((r.status for r in results), key=_SEVERITY.__getitem__, default=HealthStatus.HEALTHY)
        health = SystemHealth(status=worst, checks=list(results))
        self._cached = (time.monotonic(), health)
        return health

    async def liveness(self) -> bool:
        return True

    async def readiness(self) -> bool:
        """Ready unless some check reports unhealthy."""
        return (await self.check()).status is not HealthStatus.UNHEALTHY

    @staticmethod
    async def _run(name: str, fn: CheckFn) -> HealthCheck:
        start = time.monotonic()
        try:
            result = await asyncio.wait_for(fn(), timeout=CHECK_TIMEOUT_S)
        except TimeoutError:
            result = HealthCheck(name=name, status=HealthStatus.UNHEALTHY, message="Health check timed out")
        except (RuntimeError, OSError) as exc:
            logger.warning("health_check_failed", check=name, error=str(exc))
            result = HealthCheck(name=name, status=HealthStatus.UNHEALTHY, message=str(exc))
        result.latency_ms = (time.monotonic() - start) * 1000
        return result


# ── Dispatch Checks ────────────────────────────────────────────────


def worker_check(orchestrator: DispatchOrchestrator) -> CheckFn:
    async def check_workers() -> HealthCheck:
        status = orchestrator.status()
        saturated = status.available_slots == 0
        return HealthCheck(
            name="workers",
            status=HealthStatus.DEGRADED if saturated else HealthStatus.HEALTHY,
            message="All worker slots busy" if saturated else "",
            details={
                "available": status.available_slots,
                "busy": status.busy_slots,
                "total": status.total_slots,
            },
        )

    return check_workers


def queue_check(
    orchestrator: DispatchOrchestrator,
    backlog_threshold: int = DEFAULT_BACKLOG_THRESHOLD,
) -> CheckFn:
    async def check_queue() -> HealthCheck:
        status = orchestrator.status()
        backlogged = status.queue_length > backlog_threshold
        return HealthCheck(
            name="queue",
            status=HealthStatus.DEGRADED if backlogged else HealthStatus.HEALTHY,
            message=f"Backlog above {backlog_threshold}" if backlogged else "",
            details={
                "length": status.queue_length,
                "in_flight": status.in_flight,
                "pending_retries": status.pending_retries,
            },
        )

    return check_queue


def register_dispatch_checks(checker: HealthChecker, orchestrator: DispatchOrchestrator) -> None:
    checker.register("workers", worker_check(orchestrator))
    checker.register("queue", queue_check(orchestrator))
