"""Root test configuration for the Everly gateway.

Provides:
  - an isolated environment (no config/env leakage from the developer machine)
  - ``stub_config``   — a valid Config with a fake broker URL and credentials
  - ``make_request``  — factory for bare Starlette requests used by guard tests
  - ``mock_synapsys`` — in-process broker stand-in built on httpx.MockTransport
  - ``build_app``     — a create_app() instance wired to ``mock_synapsys``
"""

from __future__ import annotations

from typing import Any, Callable, Optional

import httpx
import pytest
import structlog
from starlette.requests import Request

from everly.config import (
    Config,
    CredentialsConfig,
    RateLimitConfig,
    UpstreamConfig,
    ValidationConfig,
)
from everly.constants import (
    HEADER_NONCE,
    HEADER_SENDER,
    HEADER_SIGNATURE,
    HEADER_TIMESTAMP,
)
from everly.proxy.signing import verify_signature
from everly.utils.logger import clear_request_id

TEST_BASE_URL = "http://synapsys.test"
TEST_SENDER_ID = "everly-test"
TEST_CLIENT_KEY = "test-client-key"

_ENV_VARS = (
    "EVERLY_CONFIG",
    "SYNAPSYS_BASE_URL",
    "EVERLY_UPSTREAM_TIMEOUT_S",
    "PORT",
    "SECRETS_DIR",
    "EVERLY_PRIVATE_CONFIG_FILE",
)


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    """Strip gateway env vars and the default config search paths."""
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr("everly.config.DEFAULT_CONFIG_PATHS", [])


@pytest.fixture(autouse=True)
def reset_rate_limiter() -> None:
    """Reset the slowapi storage used by GET /health between tests."""
    from everly.limiter import limiter

    limiter._storage.reset()


@pytest.fixture(autouse=True)
def reset_request_id() -> Any:
    yield
    clear_request_id()


@pytest.fixture(autouse=True)
def uncached_loggers() -> None:
    """Keep loggers re-resolving their processors so capture_logs() sees every line."""
    structlog.configure(cache_logger_on_first_use=False)


def make_config(
    *,
    base_url: str = TEST_BASE_URL,
    rate_per_minute: float = 10.0,
    burst: int = 5,
    prune_interval_s: float = 0.0,
    max_message_chars: int = 2000,
    timeout_s: float = 5.0,
) -> Config:
    return Config(
        upstream=UpstreamConfig(base_url=base_url, timeout_s=timeout_s),
        credentials=CredentialsConfig(sender_id=TEST_SENDER_ID, client_key=TEST_CLIENT_KEY),
        rate_limit=RateLimitConfig(
            rate_per_minute=rate_per_minute,
            burst=burst,
            prune_interval_s=prune_interval_s,
        ),
        validation=ValidationConfig(max_message_chars=max_message_chars),
    )


@pytest.fixture
def stub_config() -> Config:
    return make_config()


@pytest.fixture
def make_request() -> Callable[..., Request]:
    """Factory for a POST /api/chat Starlette Request with a fixed body."""

    def _make(body: bytes = b"", client_host: str = "10.0.0.1") -> Request:
        sent = False

        async def receive() -> dict[str, Any]:
            nonlocal sent
            if sent:
                return {"type": "http.disconnect"}
            sent = True
            return {"type": "http.request", "body": body, "more_body": False}

        scope = {
            "type": "http",
            "method": "POST",
            "path": "/api/chat",
            "raw_path": b"/api/chat",
            "query_string": b"",
            "headers": [(b"content-type", b"application/json")],
            "client": (client_host, 50000),
            "server": ("testserver", 80),
            "scheme": "http",
        }
        return Request(scope, receive)

    return _make


class MockSynapSys:
    """In-process broker built on httpx.MockTransport.

    Records every chat call, checks its signature, and answers with a
    configurable status/body. ``error`` (an exception instance) is raised
    instead of answering, to simulate transport failures.
    """

    def __init__(
        self,
        *,
        status_code: int = 200,
        body: bytes = (
            b'{"sender":"SynapSys","content":"Hello from the broker",'
            b'"metadata":{"status":"ok","reason":null}}'
        ),
        content_type: str = "application/json",
        health_status: int = 200,
        error: Optional[Exception] = None,
    ) -> None:
        self.status_code = status_code
        self.body = body
        self.content_type = content_type
        self.health_status = health_status
        self.error = error
        self.chat_requests: list[httpx.Request] = []
        self.signature_results: list[bool] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/health":
            return httpx.Response(self.health_status, json={"status": "ok"})

        self.chat_requests.append(request)
        self.signature_results.append(
            verify_signature(
                TEST_CLIENT_KEY,
                request.method,
                request.url.raw_path.decode("ascii"),
                request.headers.get(HEADER_SENDER, ""),
                request.headers.get(HEADER_TIMESTAMP, ""),
                request.headers.get(HEADER_NONCE, ""),
                request.content,
                request.headers.get(HEADER_SIGNATURE, ""),
            )
        )
        if self.error is not None:
            raise self.error
        return httpx.Response(
            self.status_code,
            content=self.body,
            headers={"content-type": self.content_type},
        )

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


@pytest.fixture
def mock_synapsys() -> MockSynapSys:
    return MockSynapSys()


@pytest.fixture
def build_app(
    monkeypatch: pytest.MonkeyPatch, mock_synapsys: MockSynapSys
) -> Callable[..., Any]:
    """Return a factory building an app whose lifespan uses ``mock_synapsys``.

    Keyword arguments are forwarded to :func:`make_config`.
    """

    def _build(**config_overrides: Any) -> Any:
        from everly.main import create_app

        config = make_config(**config_overrides)
        monkeypatch.setattr("everly.main.load_config", lambda: config)
        monkeypatch.setattr(
            "everly.main.create_http_client", lambda *args, **kwargs: mock_synapsys.client()
        )
        return create_app()

    return _build
