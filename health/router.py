# ============================================================================
# HEALTH CHECK ROUTER
# ============================================================================
# EPOCH: 1 - RULE WORKER
# STATUS: Infrastructure - FastAPI health check endpoints
# PURPOSE: Kubernetes probes and health monitoring endpoints
# CREATED: 18 OCT 2026
# ============================================================================
"""
Health Check Router

Endpoints:
    GET /livez   - Liveness probe (is the process alive?)
                   Always 200; no external dependencies.

    GET /readyz  - Readiness probe (can we accept runs?)
                   200 if every required check is not unhealthy, else 503.

    GET /health  - Full health status of every check.
                   200 healthy, 206 degraded, 503 unhealthy.

Checks are installed at startup with set_health_checks().
"""

import logging
from typing import List

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from health.core import HealthCheck, HealthStatus, run_checks
from __version__ import __version__, BUILD_DATE

logger = logging.getLogger(__name__)

health_router = APIRouter(tags=["Health"])

_checks: List[HealthCheck] = []


def set_health_checks(checks: List[HealthCheck]) -> None:
    """Install the checks the probes run (called by the main app)."""
    global _checks
    _checks = list(checks)


def _status_to_http_code(status: HealthStatus) -> int:
    """Map health status to HTTP status code."""
    return {
        HealthStatus.HEALTHY: 200,
        HealthStatus.DEGRADED: 206,  # Partial Content
        HealthStatus.UNHEALTHY: 503,  # Service Unavailable
    }[status]


# ============================================================================
# LIVENESS PROBE
# ============================================================================

@health_router.get("/livez")
async def liveness_probe():
    """Returns 200 if the process is alive."""
    return {"status": "alive", "version": __version__, "build_date": BUILD_DATE}


# ============================================================================
# READINESS PROBE
# ============================================================================

@health_router.get("/readyz")
async def readiness_probe():
    """
    Kubernetes readiness probe.

    Runs only checks marked required_for_ready. Degraded still counts as
    ready; unhealthy removes the pod from the load balancer.
    """
    required = [check for check in _checks if check.required_for_ready]
    if not required:
        return {"status": "ready", "message": "No checks registered"}

    results = await run_checks(required)
    failing = {
        name: result.to_dict()
        for name, result in results.items()
        if result.status == HealthStatus.UNHEALTHY
    }
    if failing:
        logger.warning(f"Readiness failing: {sorted(failing)}")
        return JSONResponse(status_code=503, content={"status": "not_ready", "checks": failing})

    return {"status": "ready", "checks_passed": len(results)}


# ============================================================================
# FULL HEALTH CHECK
# ============================================================================

@health_router.get("/health")
async def full_health_check():
    """Run every check and return detailed status."""
    results = await run_checks(_checks)
    status = HealthStatus.aggregate([result.status for result in results.values()])

    return JSONResponse(
        status_code=_status_to_http_code(status),
        content={
            "status": status.value,
            "checks": {name: result.to_dict() for name, result in results.items()},
            "version": __version__,
            "build_date": BUILD_DATE,
        },
    )


__all__ = [
    "health_router",
    "set_health_checks",
]
