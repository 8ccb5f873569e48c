# ============================================================================
# JWKS KEY CACHE
# ============================================================================
# EPOCH: 1 - RULE WORKER
# PURPOSE: Cache the identity provider's signing keys with single-flight refresh
# CREATED: 18 OCT 2026
# ============================================================================
"""
JWKS key cache.

Holds the identity provider's public signing keys (JWK dicts keyed by kid).

Refresh rules:
- keys older than the refresh interval are re-fetched on next use
- refresh(seen_generation=N) re-fetches only if nobody has refreshed since
  generation N; concurrent callers wait on one lock and share one fetch
- a failed fetch keeps the previous keys when there are any, and no new
  fetch starts for failure_backoff_seconds; callers that were waiting on
  the lock share the failed attempt instead of retrying it

Usage:
    cache = KeyCache("https://idp.example.com/.well-known/jwks.json")
    await cache.warmup()
    key = await cache.get_key(kid)
"""

import asyncio
import logging
import time
from typing import Any, Callable, Dict, Optional

import httpx

from core.errors import AuthError

logger = logging.getLogger(__name__)


class KeyCache:
    """Signing keys by kid, refreshed at most once per concurrent burst."""

    def __init__(
        self,
        jwks_url: str,
        refresh_interval_seconds: float = 3600,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout_seconds: float = 10.0,
        failure_backoff_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.jwks_url = jwks_url
        self.refresh_interval_seconds = refresh_interval_seconds
        self.failure_backoff_seconds = failure_backoff_seconds
        self._client = http_client
        self._owns_client = http_client is None
        self._timeout = timeout_seconds
        self._clock = clock

        self._keys: Dict[str, Dict[str, Any]] = {}
        self._fetched_at: Optional[float] = None
        self._failed_at: Optional[float] = None
        self._last_error: Optional[str] = None
        self._lock = asyncio.Lock()

        # Incremented on every successful fetch
        self.generation = 0
        self.fetch_count = 0
        # Incremented when a fetch finishes, successful or not
        self._completed = 0

    @property
    def loaded(self) -> bool:
        return self._fetched_at is not None

    def is_stale(self) -> bool:
        if self._fetched_at is None:
            return True
        return self._clock() - self._fetched_at >= self.refresh_interval_seconds

    def backing_off(self) -> bool:
        """True while the last fetch failed less than failure_backoff_seconds ago."""
        if self._failed_at is None:
            return False
        return self._clock() - self._failed_at < self.failure_backoff_seconds

    def peek(self, kid: str) -> Optional[Dict[str, Any]]:
        """Cached key without triggering a fetch."""
        return self._keys.get(kid)

    async def warmup(self) -> None:
        """First fetch, normally called at startup."""
        if not self.loaded:
            await self.refresh(force=True)

    async def get_key(self, kid: str) -> Optional[Dict[str, Any]]:
        """
        Key for ``kid``, refreshing first if the cache is stale.

        Raises:
            AuthError: No keys were ever loaded and the last fetch failed
        """
        if self.is_stale():
            await self.refresh()
        if not self._keys and self._last_error is not None:
            raise AuthError(f"Signing keys unavailable: {self._last_error}")
        return self._keys.get(kid)

    async def refresh(
        self,
        force: bool = False,
        seen_generation: Optional[int] = None,
    ) -> int:
        """
        Re-fetch the key set (single-flight).

        Callers that waited on the lock while another fetch finished reuse
        its result, whether it succeeded or failed. After a failure no new
        fetch starts until failure_backoff_seconds have passed.

        Args:
            force: Fetch even if the cache is fresh or backing off
            seen_generation: Skip the fetch if the generation has moved past
                this value while waiting for the lock

        Returns:
            Current generation
        """
        completed = self._completed
        async with self._lock:
            if not force:
                if self._completed != completed:
                    return self.generation
                if seen_generation is not None:
                    if self.generation != seen_generation:
                        return self.generation
                elif not self.is_stale():
                    return self.generation
                if self.backing_off():
                    logger.debug(f"JWKS refresh skipped, backing off after failure: {self._last_error}")
                    return self.generation

            try:
                await self._fetch()
            finally:
                self._completed += 1
            return self.generation

    async def _fetch(self) -> None:
        self.fetch_count += 1
        try:
            client = self._get_client()
            response = await client.get(self.jwks_url, timeout=self._timeout)
            response.raise_for_status()
            document = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"JWKS fetch from {self.jwks_url} failed: {e}")
            self._failed_at = self._clock()
            self._last_error = str(e)
            if self._keys:
                logger.warning("Keeping previously cached signing keys")
                return
            raise AuthError(f"Signing keys unavailable: {e}") from e

        keys = {}
        for key in document.get("keys", []):
            kid = key.get("kid")
            if kid:
                keys[kid] = key

        self._keys = keys
        self._fetched_at = self._clock()
        self._failed_at = None
        self._last_error = None
        self.generation += 1
        logger.info(f"JWKS refreshed: {len(keys)} keys (generation {self.generation})")

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient()
        return self._client

    async def close(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None


__all__ = ["KeyCache"]
