# ============================================================================
# HEALTH CHECK CORE
# ============================================================================
# EPOCH: 1 - RULE WORKER
# STATUS: Infrastructure - Health check types and execution
# PURPOSE: Check interface, result types, parallel execution with timeouts
# CREATED: 18 OCT 2026
# ============================================================================
"""
Health Check Core

Status hierarchy (worst wins):
- healthy: All systems operational
- degraded: Operational with warnings (e.g. stale signing keys)
- unhealthy: Critical failure (blocks /readyz)

Checks run in parallel, each under its own timeout. A check that raises or
times out counts as unhealthy.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class HealthStatus(str, Enum):
    """Health check status values."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"

    @property
    def severity(self) -> int:
        return {
            HealthStatus.HEALTHY: 0,
            HealthStatus.DEGRADED: 1,
            HealthStatus.UNHEALTHY: 2,
        }[self]

    @classmethod
    def aggregate(cls, statuses: List["HealthStatus"]) -> "HealthStatus":
        """Worst status wins; no statuses is healthy."""
        if not statuses:
            return cls.HEALTHY
        return max(statuses, key=lambda s: s.severity)


@dataclass
class HealthCheckResult:
    """Result from a single health check."""
    status: HealthStatus
    message: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    duration_ms: float = 0.0

    @classmethod
    def healthy(cls, message: Optional[str] = None, **details) -> "HealthCheckResult":
        return cls(status=HealthStatus.HEALTHY, message=message, details=details)

    @classmethod
    def degraded(cls, message: str, **details) -> "HealthCheckResult":
        return cls(status=HealthStatus.DEGRADED, message=message, details=details)

    @classmethod
    def unhealthy(cls, message: str, **details) -> "HealthCheckResult":
        return cls(status=HealthStatus.UNHEALTHY, message=message, details=details)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON response."""
        result = {
            "status": self.status.value,
            "duration_ms": round(self.duration_ms, 2),
        }
        if self.message:
            result["message"] = self.message
        if self.details:
            result["details"] = self.details
        return result


class HealthCheck(ABC):
    """
    Base class for health checks.

    Attributes:
        name: Unique identifier for the check
        timeout_seconds: Max execution time before the check counts as failed
        required_for_ready: If True, an unhealthy result fails /readyz
    """

    name: str = "unnamed"
    timeout_seconds: float = 5.0
    required_for_ready: bool = True

    @abstractmethod
    async def check(self) -> HealthCheckResult:
        """Execute the check."""


async def run_check(check: HealthCheck) -> HealthCheckResult:
    """Run one check under its timeout; failures become unhealthy results."""
    start = time.monotonic()
    try:
        result = await asyncio.wait_for(check.check(), timeout=check.timeout_seconds)
    except asyncio.TimeoutError:
        result = HealthCheckResult.unhealthy(f"Timed out after {check.timeout_seconds}s")
    except Exception as e:
        logger.warning(f"Health check {check.name} raised: {e}")
        result = HealthCheckResult.unhealthy(str(e), exception_type=type(e).__name__)
    result.duration_ms = (time.monotonic() - start) * 1000
    return result


async def run_checks(checks: List[HealthCheck]) -> Dict[str, HealthCheckResult]:
    """Run checks in parallel."""
    results = await asyncio.gather(*(run_check(check) for check in checks))
    return {check.name: result for check, result in zip(checks, results)}


__all__ = [
    "HealthStatus",
    "HealthCheckResult",
    "HealthCheck",
    "run_check",
    "run_checks",
]
