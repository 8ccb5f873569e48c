# ============================================================================
# OUTBOUND HTTP CLIENT
# ============================================================================
# EPOCH: 1 - RULE WORKER
# STATUS: Worker - HTTP transport for request steps
# PURPOSE: Send one rendered request, capture the response, map failures
# CREATED: 18 OCT 2026
# ============================================================================
"""
Outbound HTTP Client

Wraps a shared httpx.AsyncClient. One call per step attempt:

    client = OutboundClient(max_body_bytes=65536)
    snapshot = await client.send(request)

Failure mapping (all TransportError):
    step timeout elapsed        -> TransportTimeoutError
    connect / network failure   -> TransportConnectError
    non-2xx status              -> UpstreamStatusError (response attached)
    request cannot be encoded   -> TransportRequestError (not retried)

Only TransportRequestError is final; the actor may retry the rest.

Response capture:
    The body is read up to max_body_bytes. A complete JSON body is parsed,
    anything else is kept as text, or base64 when it is not UTF-8.
    Longer bodies are cut and flagged truncated.
"""

import asyncio
import base64
import json
import logging
import re
from typing import Dict, Optional, Tuple
from urllib.parse import quote

import httpx

from core.errors import (
    TransportConnectError,
    TransportError,
    TransportRequestError,
    TransportTimeoutError,
    UpstreamStatusError,
)
from core.models import ResponseSnapshot, redact_headers
from worker.contracts import OutboundRequest

logger = logging.getLogger(__name__)

DEFAULT_MAX_BODY_BYTES = 65536


def substitute_path_params(url: str, params: Dict[str, str]) -> str:
    """
    Replace ``:name`` segments in a URL with URL-quoted values.

    Only a ``:name`` followed by ``/``, ``?``, ``#`` or end of string is
    replaced, so ``https://`` and ports are left alone.
    """
    for name, value in params.items():
        pattern = re.compile(rf":{re.escape(name)}(?=[/?#]|$)")
        quoted = quote(str(value), safe="")
        url = pattern.sub(lambda _m: quoted, url)
    return url


class OutboundClient:
    """HTTP transport used by task actors."""

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        max_body_bytes: int = DEFAULT_MAX_BODY_BYTES,
    ):
        self._client = http_client
        self._owns_client = http_client is None
        self.max_body_bytes = max_body_bytes

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(follow_redirects=True)
        return self._client

    async def send(self, request: OutboundRequest) -> ResponseSnapshot:
        """
        Send a request and capture the response.

        Returns:
            ResponseSnapshot for a 2xx response

        Raises:
            TransportTimeoutError: Step timeout elapsed
            TransportConnectError: Connection could not be made or was lost
            UpstreamStatusError: Non-2xx response
            TransportRequestError: Request rejected by the HTTP client before sending
        """
        timeout = request.timeout_seconds
        logger.debug(f"{request.method} {request.url} (timeout {timeout}s)")

        try:
            snapshot = await asyncio.wait_for(self._exchange(request), timeout=timeout)
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            raise TransportTimeoutError(
                f"{request.method} {request.url} timed out after {timeout}s",
                timeout_seconds=timeout,
            ) from e
        except (httpx.ConnectError, httpx.NetworkError) as e:
            raise TransportConnectError(
                f"{request.method} {request.url} connection failed: {e}"
            ) from e
        except httpx.HTTPError as e:
            raise TransportError(f"{request.method} {request.url} failed: {e}") from e
        except (httpx.InvalidURL, ValueError, TypeError) as e:
            # Header values, URLs and bodies httpx refuses to encode
            raise TransportRequestError(
                f"{request.method} {request.url} could not be sent: {type(e).__name__}: {e}"
            ) from e

        if not 200 <= snapshot.status_code < 300:
            raise UpstreamStatusError(
                snapshot.status_code,
                f"{request.method} {request.url} returned HTTP {snapshot.status_code}",
                response=snapshot,
            )
        return snapshot

    async def _exchange(self, request: OutboundRequest) -> ResponseSnapshot:
        kwargs = {}
        if isinstance(request.body, (dict, list)):
            kwargs["json"] = request.body
        elif request.body is not None:
            kwargs["content"] = str(request.body).encode("utf-8")

        client = self._get_client()
        async with client.stream(
            request.method,
            request.url,
            headers=request.headers,
            params=request.query or None,
            timeout=httpx.Timeout(request.timeout_seconds),
            **kwargs,
        ) as response:
            raw, truncated = await self._read_body(response)
            total = len(raw)
            if truncated:
                declared = response.headers.get("content-length")
                total = int(declared) if declared and declared.isdigit() else total

            body, encoding = decode_body(raw, truncated, response.headers.get("content-type", ""))
            return ResponseSnapshot(
                status_code=response.status_code,
                headers=redact_headers(dict(response.headers)),
                body=body,
                encoding=encoding,
                size_bytes=total,
                truncated=truncated,
            )

    async def _read_body(self, response: httpx.Response) -> Tuple[bytes, bool]:
        chunks = []
        size = 0
        async for chunk in response.aiter_bytes():
            chunks.append(chunk)
            size += len(chunk)
            if size > self.max_body_bytes:
                return b"".join(chunks)[: self.max_body_bytes], True
        return b"".join(chunks), False

    async def close(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None


def decode_body(raw: bytes, truncated: bool, content_type: str = ""):
    """
    Turn captured bytes into (body, encoding).

    JSON is only parsed from a complete body. An empty body is None.
    """
    if not raw:
        return None, "text"

    if not truncated:
        looks_json = "json" in content_type.lower() or raw.lstrip()[:1] in (b"{", b"[")
        if looks_json:
            try:
                return json.loads(raw), "json"
            except ValueError:
                pass

    # A cut body may end inside a multi-byte character
    trims = range(4) if truncated else range(1)
    for trim in trims:
        try:
            return raw[: len(raw) - trim].decode("utf-8"), "text"
        except UnicodeDecodeError:
            continue
    return base64.b64encode(raw).decode("ascii"), "base64"


__all__ = [
    "DEFAULT_MAX_BODY_BYTES",
    "OutboundClient",
    "substitute_path_params",
    "decode_body",
]
