"""Signed calls to the SynapSys broker and classification of their outcome.

``UpstreamCaller.call()`` makes exactly one attempt per inbound request:

  1. serialise ``{"content": <message>, "context": {}}`` to compact JSON bytes
  2. hash those exact bytes and sign them (fresh timestamp + nonce)
  3. POST the same bytes to ``{base_url}/api/v1/chat`` with the
     ``X-SynapSys-*`` headers, bounded by ``upstream.timeout_s``
  4. classify: 2xx → UpstreamSuccess, 4xx → UpstreamClientError,
     anything else → UpstreamServerError; transport failures → NetworkFailure

No retries: a retry could duplicate side effects on the broker.
The shared ``httpx.AsyncClient`` is created once at startup (create_http_client)
and never per call.
"""

from __future__ import annotations

import json
from typing import Optional
from urllib.parse import urlsplit

import httpx

from everly.config import Config
from everly.constants import DEFAULT_UPSTREAM_TIMEOUT_S, REQUEST_ID_HEADER
from everly.models.upstream import (
    NetworkFailure,
    SynapSysReply,
    UpstreamClientError,
    UpstreamResult,
    UpstreamServerError,
    UpstreamSuccess,
)
from everly.proxy.signing import sign_request
from everly.utils.health import UpstreamLatencyTracker
from everly.utils.logger import PerformanceLogger, get_logger

logger = get_logger(__name__)

# Pool sized for the uvicorn --limit-concurrency default in run.py.
POOL_MAX_CONNECTIONS: int = 100
POOL_MAX_KEEPALIVE: int = 20
POOL_KEEPALIVE_EXPIRY: float = 30.0  # seconds


def create_http_client(timeout_s: float = DEFAULT_UPSTREAM_TIMEOUT_S) -> httpx.AsyncClient:
    """Create the shared httpx.AsyncClient used for every broker call.

    Created once at lifespan startup and stored in app.state.http_client.
    """
    return httpx.AsyncClient(
        limits=httpx.Limits(
            max_connections=POOL_MAX_CONNECTIONS,
            max_keepalive_connections=POOL_MAX_KEEPALIVE,
            keepalive_expiry=POOL_KEEPALIVE_EXPIRY,
        ),
        timeout=httpx.Timeout(timeout_s),
        follow_redirects=False,
    )


def encode_chat_body(message: str) -> bytes:
    """The exact bytes sent upstream (and hashed for the signature)."""
    return json.dumps(
        {"content": message, "context": {}},
        ensure_ascii=False,
        separators=(",", ":"),
    ).encode("utf-8")


def classify_response(status_code: int, body: bytes, content_type: Optional[str]) -> UpstreamResult:
    """Map a received upstream response onto an UpstreamResult."""
    if 200 <= status_code < 300:
        try:
            data = json.loads(body) if body else None
        except (json.JSONDecodeError, UnicodeDecodeError):
            data = None
        reply = SynapSysReply.parse_lenient(data)
        return UpstreamSuccess(
            status_code=status_code,
            body=body,
            content_type=content_type,
            sender=reply.sender or "unknown",
            content=reply.content or "",
            status=reply.metadata.status or "unknown",
            reason=reply.metadata.reason,
        )
    if 400 <= status_code < 500:
        return UpstreamClientError(status_code=status_code, body=body, content_type=content_type)
    # 5xx, plus 1xx/3xx which the broker never legitimately answers with
    return UpstreamServerError(status_code=status_code, body=body)


class UpstreamCaller:
    """Issues signed chat calls to the configured broker.

    Args:
        http_client:     Shared AsyncClient (app.state.http_client).
        config:          Validated Config (base URL, credentials, timeout).
        latency_tracker: Optional rolling latency window reported by /health.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        config: Config,
        latency_tracker: Optional[UpstreamLatencyTracker] = None,
    ) -> None:
        self._client = http_client
        self._url = config.upstream_chat_url
        parts = urlsplit(self._url)
        self._path_with_query = parts.path + (f"?{parts.query}" if parts.query else "")
        self._sender_id = config.credentials.sender_id
        self._client_key = config.credentials.client_key
        self._timeout = httpx.Timeout(config.upstream.timeout_s)
        self._latency_tracker = latency_tracker

    @property
    def url(self) -> str:
        return self._url

    async def call(self, message: str, request_id: str = "") -> UpstreamResult:
        """Send one signed chat call; never raises for transport errors.

        Exceptions other than httpx transport/timeout errors propagate to the
        application's unhandled-exception handler (HTTP 500).
        """
        body = encode_chat_body(message)
        signed = sign_request(
            secret=self._client_key,
            method="POST",
            path_with_query=self._path_with_query,
            sender_id=self._sender_id,
            body=body,
        )

        headers = {"Content-Type": "application/json", **signed.headers()}
        if request_id:
            headers[REQUEST_ID_HEADER] = request_id

        perf = PerformanceLogger("upstream_call", logger)
        try:
            with perf:
                response = await self._client.post(
                    self._url,
                    content=body,
                    headers=headers,
                    timeout=self._timeout,
                )
        except httpx.TimeoutException as exc:
            logger.warning(
                "upstream_timeout",
                upstream_url=self._url,
                error_type=type(exc).__name__,
                duration_ms=round(perf.duration_ms, 1),
            )
            return NetworkFailure(message=str(exc) or "timeout", error_type=type(exc).__name__)
        except httpx.TransportError as exc:
            # ConnectError, RemoteProtocolError, ReadError, ...
            logger.warning(
                "upstream_unreachable",
                upstream_url=self._url,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return NetworkFailure(message=str(exc), error_type=type(exc).__name__)

        if self._latency_tracker is not None:
            self._latency_tracker.record(perf.duration_ms)

        logger.info(
            "upstream_call",
            upstream_url=self._url,
            status_code=response.status_code,
            duration_ms=round(perf.duration_ms, 1),
            nonce=signed.canonical.nonce,
        )
        return classify_response(
            response.status_code,
            response.content,
            response.headers.get("content-type"),
        )
