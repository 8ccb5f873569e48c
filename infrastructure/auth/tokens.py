# ============================================================================
# OUTBOUND SERVICE TOKENS
# ============================================================================
# EPOCH: 1 - RULE WORKER
# PURPOSE: Obtain and cache bearer tokens for calls to downstream services
# CREATED: 18 OCT 2026
# ============================================================================
"""
Outbound service tokens.

One cached token per scope. A token is reused until it is within the refresh
skew (default 60s) of expiry; then the next caller fetches a new one while
other callers for the same scope wait on that fetch.

Token fetchers:
- ClientCredentialsFetcher: OAuth2 client-credentials grant against a token URL
- ManagedIdentityFetcher:   Azure managed identity via azure-identity

Environment Variables:
---------------------
AUTH_TOKEN_SOURCE=client_credentials|managed_identity
AUTH_TOKEN_URL, AUTH_CLIENT_ID, AUTH_CLIENT_SECRET   (client_credentials)
AZURE_CLIENT_ID                                      (user-assigned identity)
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

import httpx

from core.contracts import utc_now
from core.errors import TokenIssuanceError
from core.models import AuthToken

logger = logging.getLogger(__name__)

# Refresh tokens when less than 60 seconds until expiry
TOKEN_REFRESH_BUFFER_SECS = 60


@dataclass
class TokenCache:
    """In-memory cache for one scope's token."""
    token: Optional[AuthToken] = None

    def get_if_valid(self, min_ttl_seconds: float = 0) -> Optional[AuthToken]:
        """Get token if valid and has sufficient TTL."""
        if self.token is None or not self.token.is_valid(min_ttl_seconds):
            return None
        return self.token

    def set(self, token: AuthToken) -> None:
        self.token = token

    def invalidate(self) -> None:
        self.token = None

    def ttl_seconds(self) -> float:
        """Get remaining TTL in seconds."""
        return self.token.ttl_seconds() if self.token else 0


# ============================================================================
# FETCHERS
# ============================================================================

class TokenFetcher(ABC):
    """Obtains a fresh token for a scope."""

    @abstractmethod
    async def fetch(self, scope: str) -> AuthToken:
        """Raises TokenIssuanceError on failure."""

    async def close(self) -> None:
        pass


class ClientCredentialsFetcher(TokenFetcher):
    """OAuth2 client-credentials grant."""

    def __init__(
        self,
        token_url: str,
        client_id: str,
        client_secret: str,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout_seconds: float = 10.0,
    ):
        self.token_url = token_url
        self.client_id = client_id
        self._client_secret = client_secret
        self._client = http_client
        self._owns_client = http_client is None
        self._timeout = timeout_seconds

    async def fetch(self, scope: str) -> AuthToken:
        if self._client is None:
            self._client = httpx.AsyncClient()
        try:
            response = await self._client.post(
                self.token_url,
                data={
                    "grant_type": "client_credentials",
                    "client_id": self.client_id,
                    "client_secret": self._client_secret,
                    "scope": scope,
                },
                timeout=self._timeout,
            )
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise TokenIssuanceError(f"Token request for scope '{scope}' failed: {e}") from e

        access_token = payload.get("access_token")
        if not access_token:
            raise TokenIssuanceError(f"Token response for scope '{scope}' has no access_token")

        expires_in = int(payload.get("expires_in", 300))
        return AuthToken(
            value=access_token,
            issuer=self.token_url,
            expires_at=utc_now() + timedelta(seconds=expires_in),
            scopes=str(payload.get("scope", scope)).split(),
        )

    async def close(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None


class ManagedIdentityFetcher(TokenFetcher):
    """
    Azure managed identity.

    The azure-identity credential is synchronous; calls run in a worker
    thread so the event loop is not blocked.
    """

    def __init__(self, client_id: Optional[str] = None):
        from azure.identity import DefaultAzureCredential, ManagedIdentityCredential

        if client_id:
            logger.info(f"Using user-assigned Managed Identity: {client_id[:8]}...")
            self._credential = ManagedIdentityCredential(client_id=client_id)
        else:
            logger.info("Using DefaultAzureCredential (system MI or az login)")
            self._credential = DefaultAzureCredential()

    async def fetch(self, scope: str) -> AuthToken:
        from azure.core.exceptions import ClientAuthenticationError

        try:
            access = await asyncio.to_thread(self._credential.get_token, scope)
        except ClientAuthenticationError as e:
            raise TokenIssuanceError(f"Managed identity token for '{scope}' failed: {e}") from e

        return AuthToken(
            value=access.token,
            issuer="azure-managed-identity",
            expires_at=datetime.fromtimestamp(access.expires_on, tz=timezone.utc),
            scopes=[scope],
        )

    async def close(self) -> None:
        await asyncio.to_thread(self._credential.close)


# ============================================================================
# PROVIDER
# ============================================================================

class OutboundTokenProvider:
    """Per-scope token cache in front of a TokenFetcher."""

    def __init__(
        self,
        fetcher: TokenFetcher,
        refresh_skew_seconds: float = TOKEN_REFRESH_BUFFER_SECS,
    ):
        self.fetcher = fetcher
        self.refresh_skew_seconds = refresh_skew_seconds
        self._caches: Dict[str, TokenCache] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self.fetch_count = 0

    async def get_token(self, scope: str) -> AuthToken:
        """
        Token for ``scope``, fetched only when missing or near expiry.

        Raises:
            TokenIssuanceError: Fetch failed
        """
        cache = self._caches.setdefault(scope, TokenCache())
        cached = cache.get_if_valid(min_ttl_seconds=self.refresh_skew_seconds)
        if cached:
            return cached

        lock = self._locks.setdefault(scope, asyncio.Lock())
        async with lock:
            # Another caller may have refreshed while we waited
            cached = cache.get_if_valid(min_ttl_seconds=self.refresh_skew_seconds)
            if cached:
                return cached

            self.fetch_count += 1
            token = await self.fetcher.fetch(scope)
            cache.set(token)
            logger.info(
                f"Outbound token for scope '{scope}' acquired, expires {token.expires_at.isoformat()}"
            )
            return token

    def invalidate(self, scope: Optional[str] = None) -> None:
        if scope is None:
            for cache in self._caches.values():
                cache.invalidate()
        elif scope in self._caches:
            self._caches[scope].invalidate()

    def status(self) -> Dict[str, float]:
        """Remaining TTL per cached scope (for diagnostics)."""
        return {scope: cache.ttl_seconds() for scope, cache in self._caches.items() if cache.token}

    async def close(self) -> None:
        await self.fetcher.close()


__all__ = [
    "TOKEN_REFRESH_BUFFER_SECS",
    "TokenCache",
    "TokenFetcher",
    "ClientCredentialsFetcher",
    "ManagedIdentityFetcher",
    "OutboundTokenProvider",
]
