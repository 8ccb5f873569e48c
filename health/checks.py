# ============================================================================
# WORKER HEALTH CHECKS
# ============================================================================
# EPOCH: 1 - RULE WORKER
# STATUS: Infrastructure - Component checks
# PURPOSE: Job store, signing keys and dispatcher availability
# CREATED: 18 OCT 2026
# ============================================================================
"""
Worker Health Checks

- StoreCheck: job store reachable
- SigningKeysCheck: JWKS keys loaded and fresh (degraded when stale)
- DispatcherCheck: dispatcher accepting runs, free capacity reported
"""

import logging
from typing import List

from core.errors import StoreError
from health.core import HealthCheck, HealthCheckResult

logger = logging.getLogger(__name__)


class StoreCheck(HealthCheck):
    """Job store answers a ping."""

    name = "store"
    timeout_seconds = 5.0

    def __init__(self, store):
        self.store = store

    async def check(self) -> HealthCheckResult:
        try:
            ok = await self.store.ping()
        except StoreError as e:
            return HealthCheckResult.unhealthy(str(e), kind=e.kind)
        if not ok:
            return HealthCheckResult.unhealthy("Store ping failed")
        return HealthCheckResult.healthy(backend=type(self.store).__name__)


class SigningKeysCheck(HealthCheck):
    """
    Inbound token validation has keys to work with.

    Unhealthy only when auth is required and no keys were ever loaded.
    """

    name = "signing_keys"
    timeout_seconds = 2.0

    def __init__(self, guard):
        self.guard = guard

    async def check(self) -> HealthCheckResult:
        cache = self.guard.key_cache
        if cache is None:
            if self.guard.required:
                return HealthCheckResult.unhealthy("Auth required but no JWKS URL configured")
            return HealthCheckResult.healthy("Inbound auth disabled")

        if not cache.loaded:
            if self.guard.required:
                return HealthCheckResult.unhealthy("Signing keys not loaded", jwks_url=cache.jwks_url)
            return HealthCheckResult.degraded("Signing keys not loaded", jwks_url=cache.jwks_url)

        if cache.is_stale():
            return HealthCheckResult.degraded(
                "Signing keys past refresh interval",
                generation=cache.generation,
            )
        return HealthCheckResult.healthy(generation=cache.generation)


class DispatcherCheck(HealthCheck):
    """Dispatcher is accepting runs."""

    name = "dispatcher"
    timeout_seconds = 1.0

    def __init__(self, dispatcher):
        self.dispatcher = dispatcher

    async def check(self) -> HealthCheckResult:
        stats = self.dispatcher.stats
        if not stats["accepting"]:
            return HealthCheckResult.unhealthy("Dispatcher not accepting runs")
        if stats["available"] == 0:
            return HealthCheckResult.degraded(
                "At capacity",
                running=stats["running"],
                queued=stats["queued"],
            )
        return HealthCheckResult.healthy(
            running=stats["running"],
            queued=stats["queued"],
            available=stats["available"],
        )


def default_checks(store=None, guard=None, dispatcher=None) -> List[HealthCheck]:
    """Checks for whichever components are present."""
    checks: List[HealthCheck] = []
    if store is not None:
        checks.append(StoreCheck(store))
    if guard is not None:
        checks.append(SigningKeysCheck(guard))
    if dispatcher is not None:
        checks.append(DispatcherCheck(dispatcher))
    return checks


__all__ = [
    "StoreCheck",
    "SigningKeysCheck",
    "DispatcherCheck",
    "default_checks",
]
