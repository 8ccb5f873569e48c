# ============================================================================
# AUTH GUARD TESTS
# ============================================================================
# EPOCH: 1 - RULE WORKER
# STATUS: Tests - Inbound validation, key rotation, outbound tokens
# PURPOSE: Verify JWKS single-flight refresh and token caching with skew
# CREATED: 18 OCT 2026
# ============================================================================
"""
Auth Guard Tests

Covers:
1. Valid RS256 token -> Claims
2. Rotated signing key -> one JWKS refresh, then success
3. Concurrent validations during rotation share a single refresh
4. Expired / wrong audience / missing kid / malformed tokens
5. KeyCache staleness, failed fetches shared by concurrent callers, failure backoff
6. Outbound token cache (60s refresh skew, single flight per scope)
7. Client-credentials fetcher
8. Step credential headers

The identity provider is an httpx.MockTransport serving a JWKS document;
tokens are signed with freshly generated RSA keys.

Run with:
    pytest tests/test_auth_guard.py -v
"""

import asyncio
import base64
import time
from datetime import timedelta
from urllib.parse import parse_qs

import httpx
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from jose import jwt

from core.contracts import utc_now
from core.errors import (
    AuthError,
    InvalidTokenError,
    KeyRotationError,
    TokenExpiredError,
    TokenIssuanceError,
    UnknownTemplateVariableError,
)
from core.models import AuthToken, StepAuth
from infrastructure.auth import (
    AuthGuard,
    ClientCredentialsFetcher,
    KeyCache,
    OutboundTokenProvider,
    TokenFetcher,
)

ISSUER = "https://login.example.com/tenant-1/v2.0"
AUDIENCE = "api://rule-worker"
JWKS_URL = "https://login.example.com/keys"


# ============================================================================
# KEY HELPERS
# ============================================================================

def _b64url_uint(value: int) -> str:
    raw = value.to_bytes((value.bit_length() + 7) // 8, "big")
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


class SigningKey:
    """RSA key pair exposed as a PEM private key and a public JWK."""

    def __init__(self, kid: str):
        self.kid = kid
        self._private = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        self.pem = self._private.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        ).decode("ascii")
        numbers = self._private.public_key().public_numbers()
        self.jwk = {
            "kty": "RSA",
            "kid": kid,
            "use": "sig",
            "alg": "RS256",
            "n": _b64url_uint(numbers.n),
            "e": _b64url_uint(numbers.e),
        }

    def sign(self, headers=None, **overrides) -> str:
        now = int(time.time())
        claims = {
            "sub": "svc-billing",
            "iss": ISSUER,
            "aud": AUDIENCE,
            "tid": "tenant-1",
            "scp": "runs.write",
            "iat": now,
            "exp": now + 600,
        }
        claims.update(overrides)
        return jwt.encode(claims, self.pem, algorithm="RS256", headers=headers or {"kid": self.kid})


class FakeIdentityProvider:
    """Serves a mutable key set and counts JWKS requests."""

    def __init__(self, *keys):
        self.keys = list(keys)
        self.requests = 0
        self.fail = False

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests += 1
        if self.fail:
            return httpx.Response(503, json={"error": "unavailable"})
        return httpx.Response(200, json={"keys": [k.jwk for k in self.keys]})

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


@pytest.fixture(scope="module")
def key_one():
    return SigningKey("key-1")


@pytest.fixture(scope="module")
def key_two():
    return SigningKey("key-2")


def _make_guard(idp, **kwargs):
    cache = KeyCache(JWKS_URL, http_client=idp.client())
    return AuthGuard(key_cache=cache, issuer=ISSUER, audience=AUDIENCE, **kwargs)


# ============================================================================
# INBOUND VALIDATION
# ============================================================================

class TestValidateInbound:

    def test_valid_token(self, key_one):
        idp = FakeIdentityProvider(key_one)
        guard = _make_guard(idp)

        async def _go():
            await guard.start()
            return await guard.validate_inbound(key_one.sign())

        claims = asyncio.run(_go())
        assert claims.subject == "svc-billing"
        assert claims.tenant_id == "tenant-1"
        assert claims.scopes == ["runs.write"]
        assert idp.requests == 1

    def test_cached_keys_reused(self, key_one):
        idp = FakeIdentityProvider(key_one)
        guard = _make_guard(idp)

        async def _go():
            await guard.start()
            for _ in range(3):
                await guard.validate_inbound(key_one.sign())

        asyncio.run(_go())
        assert idp.requests == 1

    def test_expired_token(self, key_one):
        idp = FakeIdentityProvider(key_one)
        guard = _make_guard(idp)
        token = key_one.sign(exp=int(time.time()) - 3600)

        with pytest.raises(TokenExpiredError):
            asyncio.run(guard.validate_inbound(token))

    def test_leeway_accepts_just_expired(self, key_one):
        idp = FakeIdentityProvider(key_one)
        guard = _make_guard(idp, leeway_seconds=30)
        token = key_one.sign(exp=int(time.time()) - 5)

        assert asyncio.run(guard.validate_inbound(token)).subject == "svc-billing"

    def test_wrong_audience(self, key_one):
        idp = FakeIdentityProvider(key_one)
        guard = _make_guard(idp)

        with pytest.raises(InvalidTokenError):
            asyncio.run(guard.validate_inbound(key_one.sign(aud="api://someone-else")))

    def test_wrong_issuer(self, key_one):
        idp = FakeIdentityProvider(key_one)
        guard = _make_guard(idp)

        with pytest.raises(InvalidTokenError):
            asyncio.run(guard.validate_inbound(key_one.sign(iss="https://evil.example.com")))

    def test_missing_kid(self, key_one):
        idp = FakeIdentityProvider(key_one)
        guard = _make_guard(idp)
        token = jwt.encode({"sub": "x"}, key_one.pem, algorithm="RS256")

        with pytest.raises(InvalidTokenError):
            asyncio.run(guard.validate_inbound(token))
        assert idp.requests == 0

    def test_malformed_token(self, key_one):
        guard = _make_guard(FakeIdentityProvider(key_one))
        with pytest.raises(InvalidTokenError):
            asyncio.run(guard.validate_inbound("not-a-jwt"))

    def test_disallowed_algorithm(self, key_one):
        guard = _make_guard(FakeIdentityProvider(key_one))
        token = jwt.encode({"sub": "x"}, "shared-secret", algorithm="HS256", headers={"kid": "key-1"})
        with pytest.raises(InvalidTokenError):
            asyncio.run(guard.validate_inbound(token))

    def test_no_key_cache(self, key_one):
        guard = AuthGuard(key_cache=None)
        with pytest.raises(InvalidTokenError):
            asyncio.run(guard.validate_inbound(key_one.sign()))

    def test_errors_share_auth_base(self, key_one):
        guard = _make_guard(FakeIdentityProvider(key_one))
        with pytest.raises(AuthError):
            asyncio.run(guard.validate_inbound("not-a-jwt"))


# ============================================================================
# KEY ROTATION
# ============================================================================

class TestKeyRotation:

    def test_new_kid_triggers_one_refresh(self, key_one, key_two):
        idp = FakeIdentityProvider(key_one)
        guard = _make_guard(idp)

        async def _go():
            await guard.start()
            idp.keys = [key_one, key_two]
            return await guard.validate_inbound(key_two.sign())

        claims = asyncio.run(_go())
        assert claims.subject == "svc-billing"
        assert idp.requests == 2
        assert guard.key_cache.generation == 2

    def test_reused_kid_with_new_key(self, key_one):
        idp = FakeIdentityProvider(key_one)
        guard = _make_guard(idp)
        replacement = SigningKey("key-1")

        async def _go():
            await guard.start()
            idp.keys = [replacement]
            return await guard.validate_inbound(replacement.sign())

        assert asyncio.run(_go()).subject == "svc-billing"
        assert idp.requests == 2

    def test_concurrent_validations_share_refresh(self, key_one, key_two):
        idp = FakeIdentityProvider(key_one)
        guard = _make_guard(idp)

        async def _go():
            await guard.start()
            idp.keys = [key_one, key_two]
            tokens = [key_two.sign(sub=f"svc-{i}") for i in range(5)]
            return await asyncio.gather(*[guard.validate_inbound(t) for t in tokens])

        results = asyncio.run(_go())
        assert [c.subject for c in results] == [f"svc-{i}" for i in range(5)]
        assert idp.requests == 2
        assert guard.key_cache.fetch_count == 2

    def test_unknown_kid_after_refresh(self, key_one, key_two):
        idp = FakeIdentityProvider(key_one)
        guard = _make_guard(idp)

        async def _go():
            await guard.start()
            await guard.validate_inbound(key_two.sign())

        with pytest.raises(KeyRotationError):
            asyncio.run(_go())
        assert idp.requests == 2

    def test_forged_signature_rejected(self, key_one, key_two):
        idp = FakeIdentityProvider(key_one)
        guard = _make_guard(idp)
        forged = key_two.sign(headers={"kid": "key-1"})

        with pytest.raises(KeyRotationError):
            asyncio.run(guard.validate_inbound(forged))


# ============================================================================
# KEY CACHE
# ============================================================================

class TestKeyCache:

    def test_stale_cache_refreshes_on_use(self, key_one):
        idp = FakeIdentityProvider(key_one)
        now = [1000.0]
        cache = KeyCache(JWKS_URL, refresh_interval_seconds=60, http_client=idp.client(), clock=lambda: now[0])

        async def _go():
            await cache.warmup()
            await cache.get_key("key-1")
            now[0] += 61
            return await cache.get_key("key-1")

        assert asyncio.run(_go())["kid"] == "key-1"
        assert idp.requests == 2

    def test_failed_fetch_keeps_previous_keys(self, key_one):
        idp = FakeIdentityProvider(key_one)
        cache = KeyCache(JWKS_URL, http_client=idp.client())

        async def _go():
            await cache.warmup()
            idp.fail = True
            await cache.refresh(force=True)
            return cache.peek("key-1")

        assert asyncio.run(_go()) is not None

    def test_concurrent_stale_reads_share_failed_fetch(self, key_one):
        idp = FakeIdentityProvider(key_one)
        now = [1000.0]
        cache = KeyCache(JWKS_URL, refresh_interval_seconds=60, http_client=idp.client(), clock=lambda: now[0])

        async def _go():
            await cache.warmup()
            idp.fail = True
            now[0] += 61
            return await asyncio.gather(*[cache.get_key("key-1") for _ in range(5)])

        keys = asyncio.run(_go())
        assert [k["kid"] for k in keys] == ["key-1"] * 5
        assert idp.requests == 2
        assert cache.fetch_count == 2

    def test_concurrent_first_fetch_failure_not_repeated(self, key_one):
        idp = FakeIdentityProvider(key_one)
        idp.fail = True
        cache = KeyCache(JWKS_URL, http_client=idp.client())

        async def _go():
            return await asyncio.gather(
                *[cache.get_key("key-1") for _ in range(5)], return_exceptions=True,
            )

        results = asyncio.run(_go())
        assert all(isinstance(r, AuthError) for r in results)
        assert idp.requests == 1

    def test_backoff_after_failure(self, key_one):
        idp = FakeIdentityProvider(key_one)
        now = [1000.0]
        cache = KeyCache(
            JWKS_URL, refresh_interval_seconds=60, failure_backoff_seconds=30,
            http_client=idp.client(), clock=lambda: now[0],
        )

        async def _go():
            await cache.warmup()
            idp.fail = True
            now[0] += 61
            await cache.get_key("key-1")
            now[0] += 10
            await cache.get_key("key-1")
            requests_in_backoff = idp.requests
            idp.fail = False
            now[0] += 30
            await cache.get_key("key-1")
            return requests_in_backoff

        assert asyncio.run(_go()) == 2
        assert idp.requests == 3
        assert cache.generation == 2
        assert cache.backing_off() is False

    def test_failed_first_fetch_raises(self, key_one):
        idp = FakeIdentityProvider(key_one)
        idp.fail = True
        cache = KeyCache(JWKS_URL, http_client=idp.client())

        with pytest.raises(AuthError):
            asyncio.run(cache.warmup())
        assert cache.loaded is False

    def test_start_swallows_warmup_failure(self, key_one):
        idp = FakeIdentityProvider(key_one)
        idp.fail = True
        guard = _make_guard(idp)

        asyncio.run(guard.start())
        assert guard.key_cache.loaded is False


# ============================================================================
# OUTBOUND TOKENS
# ============================================================================

class CountingFetcher(TokenFetcher):
    """Issues tokens with a fixed lifetime."""

    def __init__(self, lifetime_seconds=3600):
        self.lifetime_seconds = lifetime_seconds
        self.calls = 0

    async def fetch(self, scope):
        self.calls += 1
        await asyncio.sleep(0)
        return AuthToken(
            value=f"token-{self.calls}",
            expires_at=utc_now() + timedelta(seconds=self.lifetime_seconds),
            scopes=[scope],
        )


class TestOutboundTokens:

    def test_token_cached_per_scope(self):
        fetcher = CountingFetcher()
        provider = OutboundTokenProvider(fetcher)

        async def _go():
            a1 = await provider.get_token("api://billing/.default")
            a2 = await provider.get_token("api://billing/.default")
            b1 = await provider.get_token("api://notify/.default")
            return a1, a2, b1

        a1, a2, b1 = asyncio.run(_go())
        assert a1.value == a2.value == "token-1"
        assert b1.value == "token-2"
        assert provider.fetch_count == 2

    def test_token_inside_skew_is_refreshed(self):
        fetcher = CountingFetcher(lifetime_seconds=30)
        provider = OutboundTokenProvider(fetcher, refresh_skew_seconds=60)

        async def _go():
            await provider.get_token("scope")
            return await provider.get_token("scope")

        assert asyncio.run(_go()).value == "token-2"
        assert fetcher.calls == 2

    def test_concurrent_requests_single_fetch(self):
        fetcher = CountingFetcher()
        provider = OutboundTokenProvider(fetcher)

        async def _go():
            return await asyncio.gather(*[provider.get_token("scope") for _ in range(5)])

        tokens = asyncio.run(_go())
        assert {t.value for t in tokens} == {"token-1"}
        assert fetcher.calls == 1

    def test_invalidate(self):
        fetcher = CountingFetcher()
        provider = OutboundTokenProvider(fetcher)

        async def _go():
            await provider.get_token("scope")
            provider.invalidate("scope")
            return await provider.get_token("scope")

        assert asyncio.run(_go()).value == "token-2"

    def test_guard_without_token_source(self):
        guard = AuthGuard()
        with pytest.raises(TokenIssuanceError):
            asyncio.run(guard.issue_outbound_token("scope"))


class TestClientCredentialsFetcher:

    def test_fetch(self):
        seen = {}

        def handler(request):
            seen.update({k: v[0] for k, v in parse_qs(request.content.decode()).items()})
            return httpx.Response(200, json={"access_token": "abc", "expires_in": 3600})

        fetcher = ClientCredentialsFetcher(
            "https://login.example.com/token",
            "client-1",
            "secret-1",
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        )

        token = asyncio.run(fetcher.fetch("api://billing/.default"))

        assert token.value == "abc"
        assert token.ttl_seconds() > 3500
        assert seen["grant_type"] == "client_credentials"
        assert seen["scope"] == "api://billing/.default"

    def test_fetch_failure(self):
        fetcher = ClientCredentialsFetcher(
            "https://login.example.com/token",
            "client-1",
            "secret-1",
            http_client=httpx.AsyncClient(
                transport=httpx.MockTransport(lambda r: httpx.Response(401, json={"error": "invalid_client"}))
            ),
        )
        with pytest.raises(TokenIssuanceError):
            asyncio.run(fetcher.fetch("scope"))


# ============================================================================
# CREDENTIAL HEADERS
# ============================================================================

class TestCredentialHeaders:

    CONTEXT = {"api_token": "tok", "user": "ada", "notify_key": "k-123"}

    def _headers(self, auth, guard=None, **kwargs):
        guard = guard or AuthGuard()
        return asyncio.run(guard.credential_headers(auth, self.CONTEXT, **kwargs))

    def test_no_auth(self):
        assert self._headers(None) == {}
        assert self._headers(StepAuth()) == {}

    def test_bearer(self):
        auth = StepAuth(type="bearer", token="{{ api_token }}")
        assert self._headers(auth) == {"Authorization": "Bearer tok"}

    def test_basic(self):
        auth = StepAuth(type="basic", username="{{ user }}", password="pw")
        expected = base64.b64encode(b"ada:pw").decode("ascii")
        assert self._headers(auth) == {"Authorization": f"Basic {expected}"}

    def test_api_key_mustache(self):
        auth = StepAuth(type="api_key", header="X-Notify-Key", value="{{notify_key}}")
        assert self._headers(auth, engine="mustache") == {"X-Notify-Key": "k-123"}

    def test_missing_variable_strict(self):
        auth = StepAuth(type="bearer", token="{{ missing }}")
        with pytest.raises(UnknownTemplateVariableError):
            self._headers(auth)

    def test_service_token(self):
        guard = AuthGuard(token_provider=OutboundTokenProvider(CountingFetcher()))
        auth = StepAuth(type="service_token", scope="api://billing/.default")
        assert self._headers(auth, guard=guard) == {"Authorization": "Bearer token-1"}
