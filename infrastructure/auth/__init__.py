# ============================================================================
# AUTHENTICATION MODULE
# ============================================================================
# EPOCH: 1 - RULE WORKER
# PURPOSE: Inbound JWT validation and outbound service tokens
# CREATED: 18 OCT 2026
# ============================================================================
"""
Authentication module for the job worker.

Provides:
- KeyCache: JWKS signing keys with single-flight refresh
- OutboundTokenProvider: per-scope service token cache
- AuthGuard: the component the API and task actors talk to

Usage:
    from infrastructure.auth import AuthGuard

    guard = AuthGuard.from_settings(settings.auth)
    claims = await guard.validate_inbound(bearer_token)
"""

from infrastructure.auth.jwks import KeyCache
from infrastructure.auth.tokens import (
    TokenCache,
    TokenFetcher,
    ClientCredentialsFetcher,
    ManagedIdentityFetcher,
    OutboundTokenProvider,
)
from infrastructure.auth.guard import AuthGuard

__all__ = [
    'KeyCache',
    'TokenCache',
    'TokenFetcher',
    'ClientCredentialsFetcher',
    'ManagedIdentityFetcher',
    'OutboundTokenProvider',
    'AuthGuard',
]
