# ============================================================================
# AUTH GUARD
# ============================================================================
# EPOCH: 1 - RULE WORKER
# PURPOSE: Validate inbound bearer tokens, issue outbound credentials
# CREATED: 18 OCT 2026
# ============================================================================
"""
Auth Guard.

Inbound (validate_inbound):
    1. Read the unverified header for kid/alg
    2. Look the key up in the JWKS cache (stale cache refreshes first)
    3. Unknown kid, or signature mismatch with the cached key: treat as key
       rotation. Re-fetch the key set exactly once (shared with any
       concurrent validations) and retry. Still failing -> KeyRotationError
    4. Verify expiry, issuer, audience -> Claims

Outbound:
    issue_outbound_token(scope) -> AuthToken (cached per scope)
    credential_headers(step_auth, context) -> headers for one step
"""

import base64
import logging
from typing import Any, Dict, Optional, Sequence

from jose import jws, jwt
from jose.exceptions import ExpiredSignatureError, JWSError, JWTClaimsError, JWTError

from core.config import AuthDefaults, TokenSource
from core.contracts import EngineTag
from core.errors import (
    InvalidTokenError,
    KeyRotationError,
    TokenExpiredError,
    TokenIssuanceError,
)
from core.models import AuthToken, AuthType, Claims, StepAuth
from infrastructure.auth.jwks import KeyCache
from infrastructure.auth.tokens import (
    ClientCredentialsFetcher,
    ManagedIdentityFetcher,
    OutboundTokenProvider,
)
from orchestrator.engine.templates import TemplateRenderer, get_renderer

logger = logging.getLogger(__name__)


class AuthGuard:
    """Inbound token validation and outbound credential issuance."""

    def __init__(
        self,
        key_cache: Optional[KeyCache] = None,
        token_provider: Optional[OutboundTokenProvider] = None,
        issuer: str = "",
        audience: str = "",
        algorithms: Sequence[str] = ("RS256",),
        leeway_seconds: int = 30,
        required: bool = True,
        renderer: Optional[TemplateRenderer] = None,
    ):
        self.key_cache = key_cache
        self.token_provider = token_provider
        self.issuer = issuer
        self.audience = audience
        self.algorithms = list(algorithms)
        self.leeway_seconds = leeway_seconds
        self.required = required
        self.renderer = renderer or get_renderer()

    @classmethod
    def from_settings(cls, settings: AuthDefaults) -> "AuthGuard":
        """Build from AuthDefaults (environment)."""
        key_cache = None
        if settings.jwks_url:
            key_cache = KeyCache(
                settings.jwks_url,
                refresh_interval_seconds=settings.key_refresh_seconds,
                timeout_seconds=settings.http_timeout_seconds,
            )
        elif settings.required:
            logger.warning("AUTH_REQUIRED is set but AUTH_JWKS_URL is empty, all run requests will be rejected")

        fetcher = None
        if settings.token_source == TokenSource.MANAGED_IDENTITY.value:
            fetcher = ManagedIdentityFetcher(client_id=settings.client_id or None)
        elif settings.token_url:
            fetcher = ClientCredentialsFetcher(
                settings.token_url,
                settings.client_id,
                settings.client_secret,
                timeout_seconds=settings.http_timeout_seconds,
            )
        token_provider = (
            OutboundTokenProvider(fetcher, refresh_skew_seconds=settings.token_refresh_skew_seconds)
            if fetcher else None
        )

        return cls(
            key_cache=key_cache,
            token_provider=token_provider,
            issuer=settings.issuer,
            audience=settings.audience,
            algorithms=settings.algorithms,
            leeway_seconds=settings.leeway_seconds,
            required=settings.required,
        )

    async def start(self) -> None:
        """Warm the key cache. A failure here is logged; validation retries later."""
        if self.key_cache is None:
            return
        try:
            await self.key_cache.warmup()
        except Exception as e:
            logger.error(f"Initial JWKS fetch failed: {e}")

    async def close(self) -> None:
        if self.key_cache is not None:
            await self.key_cache.close()
        if self.token_provider is not None:
            await self.token_provider.close()

    # ========================================================================
    # INBOUND
    # ========================================================================

    async def validate_inbound(self, token: str) -> Claims:
        """
        Validate a bearer token from a run request.

        Raises:
            InvalidTokenError: Malformed, bad signature, wrong issuer/audience
            TokenExpiredError: Token expired
            KeyRotationError: Signing key unknown even after re-fetching keys
        """
        if self.key_cache is None:
            raise InvalidTokenError("No signing keys configured")

        try:
            header = jwt.get_unverified_header(token)
        except JWTError as e:
            raise InvalidTokenError(f"Malformed token: {e}") from e

        kid = header.get("kid")
        if not kid:
            raise InvalidTokenError("Token header has no kid")
        if header.get("alg") not in self.algorithms:
            raise InvalidTokenError(f"Algorithm {header.get('alg')} not allowed")

        key = await self.key_cache.get_key(kid)
        generation = self.key_cache.generation

        if key is not None and self._signature_ok(token, key):
            return self._decode(token, key)

        # Unknown kid or signature mismatch: the provider may have rotated keys
        logger.info(f"Signing key {kid} unknown or stale, refreshing JWKS")
        await self.key_cache.refresh(seen_generation=generation)
        key = self.key_cache.peek(kid)
        if key is None:
            raise KeyRotationError(f"Signing key {kid} not found after key refresh")
        if not self._signature_ok(token, key):
            raise KeyRotationError(f"Signature does not verify with refreshed key {kid}")
        return self._decode(token, key)

    def _signature_ok(self, token: str, key: Dict[str, Any]) -> bool:
        try:
            jws.verify(token, key, self.algorithms)
            return True
        except JWSError:
            return False

    def _decode(self, token: str, key: Dict[str, Any]) -> Claims:
        options = {
            "verify_aud": bool(self.audience),
            "verify_iss": bool(self.issuer),
            "leeway": self.leeway_seconds,
        }
        try:
            payload = jwt.decode(
                token,
                key,
                algorithms=self.algorithms,
                audience=self.audience or None,
                issuer=self.issuer or None,
                options=options,
            )
        except ExpiredSignatureError as e:
            raise TokenExpiredError("Token has expired") from e
        except JWTClaimsError as e:
            raise InvalidTokenError(f"Invalid claims: {e}") from e
        except JWTError as e:
            raise InvalidTokenError(f"Invalid token: {e}") from e

        claims = Claims.from_payload(payload)
        logger.debug(f"Token verified for subject {claims.subject}")
        return claims

    # ========================================================================
    # OUTBOUND
    # ========================================================================

    async def issue_outbound_token(self, scope: str) -> AuthToken:
        """
        Service token for calls into ``scope``.

        Raises:
            TokenIssuanceError: No token source configured or fetch failed
        """
        if self.token_provider is None:
            raise TokenIssuanceError("No outbound token source configured")
        return await self.token_provider.get_token(scope)

    async def credential_headers(
        self,
        auth: Optional[StepAuth],
        context: Dict[str, Any],
        engine: EngineTag = EngineTag.JINJA2,
        strict: bool = True,
    ) -> Dict[str, str]:
        """
        Headers carrying the step's credentials.

        Template fields (token, username, password, value) render against the
        run context with the step's engine.
        """
        if auth is None or auth.type == AuthType.NONE:
            return {}

        def render(text: Optional[str]) -> str:
            return self.renderer.render(text or "", context, engine=engine, strict=strict)

        if auth.type == AuthType.SERVICE_TOKEN:
            token = await self.issue_outbound_token(auth.scope)
            return {"Authorization": token.authorization_header()}

        if auth.type == AuthType.BEARER:
            return {"Authorization": f"Bearer {render(auth.token)}"}

        if auth.type == AuthType.BASIC:
            raw = f"{render(auth.username)}:{render(auth.password)}".encode("utf-8")
            return {"Authorization": f"Basic {base64.b64encode(raw).decode('ascii')}"}

        if auth.type == AuthType.API_KEY:
            return {auth.header: render(auth.value)}

        return {}


__all__ = ["AuthGuard"]
