"""HTTP middleware for the Everly gateway.

BodySizeLimitMiddleware
    Hard cap on the inbound request body (MAX_REQUEST_BODY_BYTES) enforced
    before any guard runs, so an oversized upload never reaches JSON parsing.
    Two-phase check:
      1. Content-Length fast path: reject on an oversized declared size.
      2. Chunked slow path: accumulate with a rolling cap; reject on overflow.

AccessLogMiddleware
    One structured ``access`` line per request: remote address, method, path,
    status, response size, duration and — when the guard chain rejected the
    request — the rejecting guard's internal code.
"""

from __future__ import annotations

import time
from typing import Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from everly.constants import MAX_REQUEST_BODY_BYTES, MSG_BAD_REQUEST, MSG_PAYLOAD_TOO_LARGE
from everly.utils.logger import get_logger

logger = get_logger(__name__)
access_logger = get_logger("everly.access")

_PAYLOAD_TOO_LARGE_BODY: dict = {"error": MSG_PAYLOAD_TOO_LARGE}

_INVALID_CONTENT_LENGTH_BODY: dict = {"error": MSG_BAD_REQUEST}


class BodySizeLimitMiddleware(BaseHTTPMiddleware):
    """Starlette middleware enforcing a request body hard cap.

    - Content-Length > limit   → HTTP 413 (no body read)
    - Content-Length == limit  → accepted
    - chunked, body > limit    → HTTP 413 (rolling cap)
    - invalid Content-Length   → HTTP 400
    """

    def __init__(self, app, max_bytes: int = MAX_REQUEST_BODY_BYTES) -> None:  # type: ignore[no-untyped-def]
        super().__init__(app)
        self.max_bytes = max_bytes

    async def dispatch(self, request: Request, call_next) -> Response:  # type: ignore[override]
        content_length_header = request.headers.get("content-length")

        if content_length_header is not None:
            try:
                declared_size = int(content_length_header)
            except ValueError:
                logger.warning(
                    "Invalid Content-Length header",
                    value=content_length_header,
                    path=request.url.path,
                )
                return JSONResponse(status_code=400, content=_INVALID_CONTENT_LENGTH_BODY)

            if declared_size > self.max_bytes:
                logger.warning(
                    "Request body too large (Content-Length)",
                    declared_size=declared_size,
                    limit=self.max_bytes,
                    path=request.url.path,
                )
                return JSONResponse(status_code=413, content=_PAYLOAD_TOO_LARGE_BODY)

            return await call_next(request)

        body_chunks: list[bytes] = []
        total_size: int = 0

        async for chunk in request.stream():
            total_size += len(chunk)
            if total_size > self.max_bytes:
                logger.warning(
                    "Request body too large (chunked)",
                    accumulated_size=total_size,
                    limit=self.max_bytes,
                    path=request.url.path,
                )
                return JSONResponse(status_code=413, content=_PAYLOAD_TOO_LARGE_BODY)
            body_chunks.append(chunk)

        # Starlette's Request.body() returns request._body when present, so the
        # handler can read the body again without touching the consumed stream.
        request._body = b"".join(body_chunks)  # type: ignore[attr-defined]

        return await call_next(request)


class AccessLogMiddleware(BaseHTTPMiddleware):
    """Emit one ``access`` log line per request, including failed ones."""

    async def dispatch(self, request: Request, call_next) -> Response:  # type: ignore[override]
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            self._log(request, 500, None, started)
            raise
        self._log(request, response.status_code, response.headers.get("content-length"), started)
        return response

    @staticmethod
    def _log(
        request: Request,
        status_code: int,
        content_length: Optional[str],
        started: float,
    ) -> None:
        verdict = getattr(request.state, "guard_verdict", None)
        access_logger.info(
            "access",
            remote_addr=request.client.host if request.client else None,
            method=request.method,
            path=request.url.path,
            status_code=status_code,
            content_length=content_length,
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
            request_id=getattr(request.state, "request_id", None),
            guard=verdict.guard_id if verdict is not None else None,
            code=(
                verdict.internal_code
                if verdict is not None
                else getattr(request.state, "outcome_code", None)
            ),
        )
