"""Everly gateway FastAPI application factory + lifespan lifecycle.

This module implements:
  - create_app()  — testable application factory
  - lifespan      — @asynccontextmanager startup/shutdown sequence
  - /             — service discovery root
  - app = create_app() — module-level instance for uvicorn

Startup sequence:
  1. load_config()             → app.state.config   (SystemExit on bad config)
  2. create_http_client()      → app.state.http_client
  3. TokenBucketRateLimiter    → app.state.rate_limiter
  4. build_guard_chain()       → app.state.guard_chain
  5. UpstreamCaller            → app.state.upstream_caller
  6. bucket pruner task        → idle buckets dropped every prune_interval_s
  7. app.state.ready = True

Shutdown (reverse):
  ready = False → cancel pruner → close http client
"""

from __future__ import annotations

import asyncio
import os
import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import httpx
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from fastapi.routing import APIRouter
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from everly.config import Config, load_config
from everly.guards import TokenBucketRateLimiter, build_guard_chain
from everly.health import router as health_router
from everly.limiter import limiter
from everly.models.responses import build_internal_error_response
from everly.proxy.engine import router as chat_router
from everly.proxy.middleware import AccessLogMiddleware, BodySizeLimitMiddleware
from everly.proxy.upstream import UpstreamCaller, create_http_client
from everly.utils.health import UpstreamLatencyTracker
from everly.utils.logger import configure_logging, get_logger

# ─── Logging Setup ────────────────────────────────────────────────────────────
DEBUG = os.getenv("DEBUG", "false").lower() == "true"
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO" if not DEBUG else "DEBUG")
JSON_LOGS = os.getenv("JSON_LOGS", "true").lower() == "true"

configure_logging(log_level=LOG_LEVEL, json_output=JSON_LOGS)
logger = get_logger(__name__)

root_router = APIRouter(tags=["root"])


# ─── Dependencies ─────────────────────────────────────────────────────────────


async def require_ready(request: Request) -> None:
    """FastAPI dependency: raises HTTP 503 if app.state.ready is not True."""
    if not getattr(request.app.state, "ready", False):
        raise HTTPException(status_code=503, detail="Everly is starting up.")


@root_router.get("/")
async def root() -> dict[str, str]:
    """Root endpoint — service identity / discovery."""
    return {
        "service": "Everly",
        "chat": "/api/chat",
        "health": "/health",
    }


# ─── Background tasks ─────────────────────────────────────────────────────────


async def _prune_buckets_forever(rate_limiter: TokenBucketRateLimiter, interval_s: float) -> None:
    """Drop idle (full) rate-limit buckets every ``interval_s`` seconds."""
    while True:
        await asyncio.sleep(interval_s)
        removed = rate_limiter.prune()
        logger.debug("Rate-limit bucket prune", removed=removed, tracked_keys=len(rate_limiter))


# ─── Lifespan ─────────────────────────────────────────────────────────────────


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan — startup and shutdown sequence."""
    logger.info("Everly starting up...")
    app.state.started_at = time.monotonic()

    # load_config() raises SystemExit on invalid or missing required values,
    # so ready=True is never reached with a broken configuration.
    config: Config = load_config()
    app.state.config = config

    http_client: httpx.AsyncClient = create_http_client(config.upstream.timeout_s)
    app.state.http_client = http_client

    rate_limiter = TokenBucketRateLimiter(
        rate_per_minute=config.rate_limit.rate_per_minute,
        burst=config.rate_limit.burst,
    )
    app.state.rate_limiter = rate_limiter

    app.state.guard_chain = build_guard_chain(
        rate_limiter, config.validation.max_message_chars
    )

    latency_tracker = UpstreamLatencyTracker()
    app.state.latency_tracker = latency_tracker
    upstream_caller = UpstreamCaller(http_client, config, latency_tracker)
    app.state.upstream_caller = upstream_caller

    prune_task: Optional[asyncio.Task[None]] = None
    if config.rate_limit.prune_interval_s > 0:
        prune_task = asyncio.create_task(
            _prune_buckets_forever(rate_limiter, config.rate_limit.prune_interval_s)
        )

    app.state.ready = True
    logger.info(
        "Everly ready",
        upstream=upstream_caller.url,
        guards=app.state.guard_chain.guard_ids,
        timeout_s=config.upstream.timeout_s,
    )

    yield

    logger.info("Everly shutting down...")
    app.state.ready = False

    if prune_task is not None and not prune_task.done():
        prune_task.cancel()
        try:
            await prune_task
        except asyncio.CancelledError:
            pass

    try:
        await http_client.aclose()
        logger.info("HTTP client closed")
    except Exception as exc:
        logger.warning("HTTP client close error (non-fatal)", error=str(exc))

    logger.info("Everly shutdown complete")


# ─── Application Factory ──────────────────────────────────────────────────────


def create_app() -> FastAPI:
    """Create and configure the Everly FastAPI application.

    Call this directly in tests to get an isolated app instance; patch
    ``everly.main.load_config`` / ``everly.main.create_http_client`` to avoid
    file and network I/O.
    """
    _debug = os.getenv("DEBUG", "false").lower() == "true"

    application = FastAPI(
        title="Everly Gateway",
        description="Edge gateway forwarding signed chat messages to SynapSys",
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs" if _debug else None,
        redoc_url="/redoc" if _debug else None,
        openapi_url="/openapi.json" if _debug else None,
    )

    application.state.ready = False

    application.state.limiter = limiter
    application.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    application.add_middleware(
        CORSMiddleware,
        allow_origins=[os.getenv("ALLOWED_ORIGIN", "*")],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type"],
        expose_headers=["X-Everly-Request-ID", "Retry-After"],
    )

    # In Starlette the LAST-added middleware is OUTERMOST (runs first):
    # access log → body size cap → slowapi → CORS → routes.
    application.add_middleware(SlowAPIMiddleware)
    application.add_middleware(BodySizeLimitMiddleware)
    application.add_middleware(AccessLogMiddleware)

    application.include_router(root_router)
    application.include_router(health_router)
    application.include_router(chat_router, dependencies=[Depends(require_ready)])

    @application.exception_handler(HTTPException)
    async def http_exception_handler(
        request: Request, exc: HTTPException
    ) -> JSONResponse:
        logger.warning(
            "HTTP exception",
            status_code=exc.status_code,
            detail=exc.detail,
            path=str(request.url.path),
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
            headers=getattr(exc, "headers", None),
        )

    @application.exception_handler(Exception)
    async def unhandled_exception_handler(
        request: Request, exc: Exception
    ) -> Response:
        logger.error(
            "Unhandled exception",
            code="INTERNAL_ERROR",
            error=str(exc),
            error_type=type(exc).__name__,
            path=str(request.url.path),
            request_id=getattr(request.state, "request_id", None),
        )
        return build_internal_error_response(getattr(request.state, "request_id", None))

    return application


# ─── Module-Level App (for uvicorn) ───────────────────────────────────────────

app = create_app()


if __name__ == "__main__":
    from everly.run import main

    main()
