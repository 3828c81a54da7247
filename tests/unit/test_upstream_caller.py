"""Unit tests for everly/proxy/upstream.py.

Test strategy: httpx.MockTransport stands in for the broker, captures the
exact bytes and headers sent, and verifies the signature the way the broker
would.
"""

from __future__ import annotations

import json
from typing import Callable

import httpx
import pytest

from everly.config import Config
from everly.constants import (
    HEADER_NONCE,
    HEADER_SENDER,
    HEADER_SIGNATURE,
    HEADER_TIMESTAMP,
    REQUEST_ID_HEADER,
)
from everly.models.upstream import (
    NetworkFailure,
    UpstreamClientError,
    UpstreamServerError,
    UpstreamSuccess,
)
from everly.proxy.signing import sha256_hex, verify_signature
from everly.proxy.upstream import (
    POOL_MAX_CONNECTIONS,
    UpstreamCaller,
    classify_response,
    create_http_client,
    encode_chat_body,
)
from everly.utils.health import UpstreamLatencyTracker

REPLY = b'{"sender":"SynapSys","content":"Sunny.","metadata":{"status":"ok","reason":"weather"}}'


def _caller(
    config: Config,
    handler: Callable[[httpx.Request], httpx.Response],
    tracker: UpstreamLatencyTracker | None = None,
) -> UpstreamCaller:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return UpstreamCaller(client, config, tracker)


# ─── encode_chat_body() / create_http_client() ────────────────────────────────


class TestEncodeChatBody:
    def test_compact_json_with_empty_context(self) -> None:
        assert encode_chat_body("hi") == b'{"content":"hi","context":{}}'

    def test_non_ascii_is_utf8_not_escaped(self) -> None:
        body = encode_chat_body("café ☕")
        assert "café ☕".encode("utf-8") in body
        assert json.loads(body) == {"content": "café ☕", "context": {}}


class TestCreateHttpClient:
    @pytest.mark.asyncio
    async def test_client_settings(self) -> None:
        client = create_http_client(7.5)
        try:
            assert client.timeout.read == 7.5
            assert client.timeout.connect == 7.5
            assert client.follow_redirects is False
        finally:
            await client.aclose()

    def test_pool_size(self) -> None:
        assert POOL_MAX_CONNECTIONS == 100


# ─── classify_response() ──────────────────────────────────────────────────────


class TestClassifyResponse:
    @pytest.mark.parametrize("status", [200, 201, 204, 299])
    def test_2xx_is_success(self, status: int) -> None:
        assert isinstance(classify_response(status, REPLY, "application/json"), UpstreamSuccess)

    def test_success_extracts_reply_fields(self) -> None:
        result = classify_response(200, REPLY, "application/json")
        assert isinstance(result, UpstreamSuccess)
        assert result.body == REPLY
        assert result.sender == "SynapSys"
        assert result.content == "Sunny."
        assert result.status == "ok"
        assert result.reason == "weather"

    @pytest.mark.parametrize(
        "body",
        [b"", b"not json", b"[1,2]", b'{"sender": 5, "metadata": "x"}', b'{"content": null}'],
    )
    def test_success_with_unexpected_body_keeps_bytes(self, body: bytes) -> None:
        result = classify_response(200, body, "application/json")
        assert isinstance(result, UpstreamSuccess)
        assert result.body == body
        assert result.sender == "unknown"
        assert result.status == "unknown"

    @pytest.mark.parametrize("status", [400, 401, 403, 404, 409, 422, 429, 499])
    def test_4xx_is_client_error(self, status: int) -> None:
        result = classify_response(status, b'{"detail":"x"}', "application/json")
        assert isinstance(result, UpstreamClientError)
        assert result.status_code == status
        assert result.body == b'{"detail":"x"}'

    @pytest.mark.parametrize("status", [500, 502, 503, 504, 302, 101])
    def test_everything_else_is_server_error(self, status: int) -> None:
        result = classify_response(status, b"oops", "text/plain")
        assert isinstance(result, UpstreamServerError)
        assert result.status_code == status


# ─── UpstreamCaller.call() ────────────────────────────────────────────────────


class TestUpstreamCaller:
    @pytest.mark.asyncio
    async def test_sends_signed_request(self, stub_config: Config) -> None:
        captured: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            captured.append(request)
            return httpx.Response(200, content=REPLY, headers={"content-type": "application/json"})

        caller = _caller(stub_config, handler)
        result = await caller.call("What is the weather?", request_id="01REQ")

        assert isinstance(result, UpstreamSuccess)
        assert len(captured) == 1
        sent = captured[0]
        assert sent.method == "POST"
        assert str(sent.url) == "http://synapsys.test/api/v1/chat"
        assert sent.content == b'{"content":"What is the weather?","context":{}}'
        assert sent.headers["content-type"] == "application/json"
        assert sent.headers[HEADER_SENDER] == "everly-test"
        assert sent.headers[REQUEST_ID_HEADER] == "01REQ"
        assert verify_signature(
            "test-client-key",
            "POST",
            "/api/v1/chat",
            sent.headers[HEADER_SENDER],
            sent.headers[HEADER_TIMESTAMP],
            sent.headers[HEADER_NONCE],
            sent.content,
            sent.headers[HEADER_SIGNATURE],
        )

    @pytest.mark.asyncio
    async def test_signature_covers_transmitted_bytes(self, stub_config: Config) -> None:
        captured: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            captured.append(request)
            return httpx.Response(200, content=b"{}")

        await _caller(stub_config, handler).call("naïve résumé")
        sent = captured[0]
        assert sha256_hex(sent.content) == sha256_hex(encode_chat_body("naïve résumé"))
        assert verify_signature(
            "test-client-key",
            "POST",
            "/api/v1/chat",
            "everly-test",
            sent.headers[HEADER_TIMESTAMP],
            sent.headers[HEADER_NONCE],
            sent.content,
            sent.headers[HEADER_SIGNATURE],
        )

    @pytest.mark.asyncio
    async def test_fresh_nonce_per_call(self, stub_config: Config) -> None:
        nonces: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            nonces.append(request.headers[HEADER_NONCE])
            return httpx.Response(200, content=b"{}")

        caller = _caller(stub_config, handler)
        await caller.call("one")
        await caller.call("one")
        assert len(set(nonces)) == 2

    @pytest.mark.asyncio
    async def test_no_request_id_header_when_absent(self, stub_config: Config) -> None:
        captured: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            captured.append(request)
            return httpx.Response(200, content=b"{}")

        await _caller(stub_config, handler).call("hi")
        assert REQUEST_ID_HEADER not in captured[0].headers

    @pytest.mark.asyncio
    async def test_exactly_one_attempt_on_server_error(self, stub_config: Config) -> None:
        calls: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(502, content=b"bad gateway")

        result = await _caller(stub_config, handler).call("hi")
        assert isinstance(result, UpstreamServerError)
        assert result.status_code == 502
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_client_error(self, stub_config: Config) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(401, json={"error": "bad signature"})

        result = await _caller(stub_config, handler).call("hi")
        assert isinstance(result, UpstreamClientError)
        assert result.status_code == 401

    @pytest.mark.asyncio
    async def test_redirect_is_not_followed(self, stub_config: Config) -> None:
        calls: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(302, headers={"location": "http://elsewhere.test/"})

        result = await _caller(stub_config, handler).call("hi")
        assert isinstance(result, UpstreamServerError)
        assert len(calls) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "exc_type",
        [httpx.ConnectError, httpx.ReadTimeout, httpx.ConnectTimeout, httpx.RemoteProtocolError],
    )
    async def test_transport_errors_become_network_failure(
        self, stub_config: Config, exc_type: type[httpx.TransportError]
    ) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise exc_type("broken", request=request)

        tracker = UpstreamLatencyTracker()
        result = await _caller(stub_config, handler, tracker).call("hi")

        assert isinstance(result, NetworkFailure)
        assert result.error_type == exc_type.__name__
        assert tracker.count == 0

    @pytest.mark.asyncio
    async def test_unexpected_errors_propagate(self, stub_config: Config) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise ValueError("not a transport problem")

        with pytest.raises(ValueError):
            await _caller(stub_config, handler).call("hi")

    @pytest.mark.asyncio
    async def test_records_latency(self, stub_config: Config) -> None:
        tracker = UpstreamLatencyTracker()
        caller = _caller(
            stub_config, lambda request: httpx.Response(200, content=b"{}"), tracker
        )
        await caller.call("hi")
        await caller.call("hi")
        assert tracker.count == 2

    def test_url(self, stub_config: Config) -> None:
        caller = _caller(stub_config, lambda request: httpx.Response(200))
        assert caller.url == "http://synapsys.test/api/v1/chat"

    @pytest.mark.asyncio
    async def test_base_url_with_path_prefix(self, stub_config: Config) -> None:
        stub_config.upstream.base_url = "http://gateway.test/synapsys"
        captured: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            captured.append(request)
            return httpx.Response(200, content=b"{}")

        await _caller(stub_config, handler).call("hi")
        sent = captured[0]
        assert sent.url.path == "/synapsys/api/v1/chat"
        assert verify_signature(
            "test-client-key",
            "POST",
            "/synapsys/api/v1/chat",
            "everly-test",
            sent.headers[HEADER_TIMESTAMP],
            sent.headers[HEADER_NONCE],
            sent.content,
            sent.headers[HEADER_SIGNATURE],
        )
