"""Client-facing HTTP response builders.

Every non-success body has the same shape, ``{"error": "<generic message>"}``.
Internal codes, upstream error bodies and exception text never appear in a
body; they only go to the logs. When a correlation id has been assigned it is
echoed in the ``X-Everly-Request-ID`` diagnostic header.

  build_rejection_response()        — guard verdict (400 / 413 / 429)
  build_upstream_passthrough()      — upstream 2xx / 4xx, verbatim
  build_service_unavailable_response() — upstream >= 500 or network failure (503)
  build_internal_error_response()   — unclassified failure (500)
"""

from __future__ import annotations

from typing import Optional

from fastapi.responses import JSONResponse, Response

from everly.constants import MSG_INTERNAL_ERROR, MSG_SERVICE_UNAVAILABLE, REQUEST_ID_HEADER
from everly.guards.base import Reject


def _tag(response: Response, request_id: Optional[str]) -> Response:
    if request_id:
        response.headers[REQUEST_ID_HEADER] = request_id
    return response


def build_rejection_response(verdict: Reject, request_id: Optional[str] = None) -> Response:
    """JSON error response for a guard rejection.

    429 responses carry ``Retry-After`` when the verdict has a hint.
    """
    response = JSONResponse(
        status_code=verdict.http_status,
        content={"error": verdict.user_message},
    )
    if verdict.retry_after is not None:
        response.headers["Retry-After"] = str(verdict.retry_after)
    return _tag(response, request_id)


def build_upstream_passthrough(
    status_code: int,
    body: bytes,
    content_type: Optional[str],
    request_id: Optional[str] = None,
) -> Response:
    """Forward an upstream body and status unchanged (byte-identical)."""
    response = Response(
        content=body,
        status_code=status_code,
        media_type=content_type or "application/json",
    )
    return _tag(response, request_id)


def build_service_unavailable_response(request_id: Optional[str] = None) -> Response:
    """Generic 503; the broker's own error detail is never included."""
    response = JSONResponse(status_code=503, content={"error": MSG_SERVICE_UNAVAILABLE})
    return _tag(response, request_id)


def build_internal_error_response(request_id: Optional[str] = None) -> Response:
    response = JSONResponse(status_code=500, content={"error": MSG_INTERNAL_ERROR})
    return _tag(response, request_id)
