# ============================================================================
# HEALTH CHECK MODULE
# ============================================================================
# EPOCH: 1 - RULE WORKER
# STATUS: Infrastructure - Health checks
# PURPOSE: Kubernetes probes and health monitoring
# CREATED: 18 OCT 2026
# ============================================================================
"""
Health Check Module

- /livez: Process alive (instant, for Kubernetes liveness probe)
- /readyz: Ready to accept runs (required checks only)
- /health: Comprehensive status

Usage:
    from health import health_router, set_health_checks, default_checks

    set_health_checks(default_checks(store=store, guard=guard, dispatcher=dispatcher))
    app.include_router(health_router)
"""

from health.core import HealthStatus, HealthCheckResult, HealthCheck, run_check, run_checks
from health.checks import StoreCheck, SigningKeysCheck, DispatcherCheck, default_checks
from health.router import health_router, set_health_checks

__all__ = [
    "HealthStatus",
    "HealthCheckResult",
    "HealthCheck",
    "run_check",
    "run_checks",
    "StoreCheck",
    "SigningKeysCheck",
    "DispatcherCheck",
    "default_checks",
    "health_router",
    "set_health_checks",
]
