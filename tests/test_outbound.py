# ============================================================================
# OUTBOUND CLIENT TESTS
# ============================================================================
# EPOCH: 1 - RULE WORKER
# STATUS: Tests - HTTP transport for request steps
# PURPOSE: Verify response capture, truncation and failure mapping
# CREATED: 18 OCT 2026
# ============================================================================
"""
Outbound Client Tests

Covers:
1. JSON / text / binary response capture
2. Body truncation at max_body_bytes
3. Non-2xx -> UpstreamStatusError with the response attached
4. Timeouts, connection failures, requests the client cannot encode
5. Request encoding (JSON body, query, headers)
6. Path parameter substitution

Run with:
    pytest tests/test_outbound.py -v
"""

import asyncio
import json

import httpx
import pytest

from core.errors import (
    TransportConnectError,
    TransportError,
    TransportRequestError,
    TransportTimeoutError,
    UpstreamStatusError,
)
from worker.contracts import OutboundRequest
from worker.outbound import OutboundClient, decode_body, substitute_path_params


def _client(handler, **kwargs):
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return OutboundClient(http_client=http_client, **kwargs)


def _send(client, request):
    return asyncio.run(client.send(request))


# ============================================================================
# RESPONSE CAPTURE
# ============================================================================

class TestResponseCapture:

    def test_json_response(self):
        captured = {}

        def handler(request):
            captured["method"] = request.method
            captured["url"] = str(request.url)
            captured["headers"] = dict(request.headers)
            captured["body"] = json.loads(request.content)
            return httpx.Response(201, json={"invoice": {"id": "inv-1"}})

        client = _client(handler)
        snapshot = _send(client, OutboundRequest(
            method="POST",
            url="https://billing.example.com/charge/150",
            headers={"X-Customer": "c-1"},
            query={"dry_run": "false"},
            body={"amount": 150},
        ))

        assert snapshot.status_code == 201
        assert snapshot.body == {"invoice": {"id": "inv-1"}}
        assert snapshot.encoding == "json"
        assert snapshot.truncated is False
        assert captured["method"] == "POST"
        assert captured["url"] == "https://billing.example.com/charge/150?dry_run=false"
        assert captured["headers"]["x-customer"] == "c-1"
        assert captured["body"] == {"amount": 150}

    def test_text_response(self):
        client = _client(lambda r: httpx.Response(200, text="accepted"))
        snapshot = _send(client, OutboundRequest(method="GET", url="https://x.example.com"))
        assert snapshot.body == "accepted"
        assert snapshot.encoding == "text"

    def test_binary_response(self):
        client = _client(lambda r: httpx.Response(200, content=b"\xff\xfe\x00\x01"))
        snapshot = _send(client, OutboundRequest(method="GET", url="https://x.example.com"))
        assert snapshot.encoding == "base64"
        assert snapshot.body == "//4AAQ=="

    def test_empty_response(self):
        client = _client(lambda r: httpx.Response(204))
        snapshot = _send(client, OutboundRequest(method="DELETE", url="https://x.example.com"))
        assert snapshot.body is None

    def test_truncated_body(self):
        payload = json.dumps({"data": "x" * 500}).encode()
        client = _client(lambda r: httpx.Response(200, content=payload), max_body_bytes=100)

        snapshot = _send(client, OutboundRequest(method="GET", url="https://x.example.com"))

        assert snapshot.truncated is True
        assert snapshot.encoding == "text"
        assert len(snapshot.body) == 100
        assert snapshot.size_bytes == len(payload)

    def test_response_credentials_redacted(self):
        client = _client(lambda r: httpx.Response(200, json={}, headers={"Set-Cookie": "session=abc"}))
        snapshot = _send(client, OutboundRequest(method="GET", url="https://x.example.com"))
        assert snapshot.headers["set-cookie"] == "***"


# ============================================================================
# FAILURES
# ============================================================================

class TestFailures:

    def test_non_2xx_carries_response(self):
        client = _client(lambda r: httpx.Response(500, json={"error": "boom"}))

        with pytest.raises(UpstreamStatusError) as exc:
            _send(client, OutboundRequest(method="GET", url="https://x.example.com"))

        assert exc.value.status_code == 500
        assert exc.value.response.body == {"error": "boom"}
        assert isinstance(exc.value, TransportError)

    def test_transport_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("read timed out", request=request)

        with pytest.raises(TransportTimeoutError):
            _send(_client(handler), OutboundRequest(method="GET", url="https://x.example.com"))

    def test_step_timeout(self):
        class SlowStream(httpx.AsyncByteStream):
            async def __aiter__(self):
                await asyncio.sleep(5)
                yield b"{}"

        client = _client(lambda r: httpx.Response(200, stream=SlowStream()))
        request = OutboundRequest(method="GET", url="https://x.example.com", timeout_seconds=0.05)

        with pytest.raises(TransportTimeoutError) as exc:
            _send(client, request)
        assert exc.value.kind == "TransportError.Timeout"

    def test_connect_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(TransportConnectError):
            _send(_client(handler), OutboundRequest(method="GET", url="https://x.example.com"))

    def test_unencodable_header_is_not_retryable(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(204)

        request = OutboundRequest(
            method="GET", url="https://x.example.com", headers={"X-Customer": "Jos\u00e9"},
        )
        with pytest.raises(TransportRequestError) as exc:
            _send(_client(handler), request)

        assert exc.value.kind == "TransportError.Request"
        assert exc.value.retryable is False
        assert calls == []


# ============================================================================
# HELPERS
# ============================================================================

class TestPathParams:

    def test_substitution(self):
        url = substitute_path_params(
            "https://billing.example.com:8443/charge/:amount/customers/:id",
            {"amount": "150", "id": "c 42/x"},
        )
        assert url == "https://billing.example.com:8443/charge/150/customers/c%2042%2Fx"

    def test_prefix_names_not_confused(self):
        assert substitute_path_params("/a/:id/:identity", {"id": "1"}) == "/a/1/:identity"


class TestDecodeBody:

    def test_truncated_json_is_text(self):
        assert decode_body(b'{"a": 1', True) == ('{"a": 1', "text")

    def test_cut_multibyte_character(self):
        raw = "hé".encode("utf-8")[:-1]
        assert decode_body(raw, True) == ("h", "text")

    def test_json_by_content_type(self):
        assert decode_body(b"42", False, "application/json") == (42, "json")
