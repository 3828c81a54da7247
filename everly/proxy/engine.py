"""``POST /api/chat`` — the gateway's only proxied endpoint.

Flow per request (one asyncio task each; only the broker call awaits I/O):

  GuardChain.run()            identity → rate limit → validation
    └─ Reject                 → {"error": ...} with 400 / 413 / 429
  UpstreamCaller.call()       one signed POST to {base}/api/v1/chat
    ├─ UpstreamSuccess        → broker body forwarded verbatim
    ├─ UpstreamClientError    → broker status + body passed through
    ├─ UpstreamServerError    → 503, generic message
    └─ NetworkFailure         → 503, generic message

Anything unexpected propagates to the application's exception handler (500).
Every outcome is logged with its internal code and the request's correlation id.
"""

from __future__ import annotations

from fastapi import APIRouter, Request, Response

from everly.constants import (
    CODE_NETWORK_FAILURE,
    CODE_UPSTREAM_CLIENT_ERROR,
    CODE_UPSTREAM_SERVER_ERROR,
    LOG_CONTENT_PREVIEW_CHARS,
    LOG_QUERY_PREVIEW_CHARS,
)
from everly.guards.base import GuardChain
from everly.models.responses import (
    build_rejection_response,
    build_service_unavailable_response,
    build_upstream_passthrough,
)
from everly.models.upstream import (
    NetworkFailure,
    UpstreamClientError,
    UpstreamServerError,
    UpstreamSuccess,
)
from everly.proxy.upstream import UpstreamCaller
from everly.utils.logger import get_logger, preview

logger = get_logger(__name__)

router = APIRouter(tags=["chat"])


@router.post("/api/chat")
async def chat_handler(request: Request) -> Response:
    """Admit, forward and classify one chat message.

    Returns:
        The broker's response on success / upstream 4xx, otherwise a generic
        ``{"error": ...}`` body (400, 413, 429, 503).
    """
    guard_chain: GuardChain = request.app.state.guard_chain
    upstream: UpstreamCaller = request.app.state.upstream_caller

    outcome = await guard_chain.run(request)
    request_id = outcome.context.request_id

    if outcome.rejection is not None:
        return build_rejection_response(outcome.rejection, request_id)

    message = outcome.context.message
    if message is None:
        raise RuntimeError("guard chain admitted a request without a validated message")

    result = await upstream.call(message, request_id=request_id)

    if isinstance(result, UpstreamSuccess):
        logger.info(
            "request_forwarded",
            result="PASS",
            user_query=preview(message, LOG_QUERY_PREVIEW_CHARS),
            sender=result.sender,
            status=result.status,
            reason=result.reason,
            content_preview=preview(result.content, LOG_CONTENT_PREVIEW_CHARS),
        )
        return build_upstream_passthrough(
            result.status_code, result.body, result.content_type, request_id
        )

    if isinstance(result, UpstreamClientError):
        request.state.outcome_code = CODE_UPSTREAM_CLIENT_ERROR
        logger.info(
            "upstream_client_error",
            result="FAIL",
            code=CODE_UPSTREAM_CLIENT_ERROR,
            http_status=result.status_code,
            user_query=preview(message, LOG_QUERY_PREVIEW_CHARS),
        )
        return build_upstream_passthrough(
            result.status_code, result.body, result.content_type, request_id
        )

    if isinstance(result, UpstreamServerError):
        request.state.outcome_code = CODE_UPSTREAM_SERVER_ERROR
        logger.warning(
            "upstream_server_error",
            result="FAIL",
            code=CODE_UPSTREAM_SERVER_ERROR,
            http_status=result.status_code,
            body_preview=preview(
                result.body.decode("utf-8", errors="replace"), LOG_CONTENT_PREVIEW_CHARS
            ),
            user_query=preview(message, LOG_QUERY_PREVIEW_CHARS),
        )
        return build_service_unavailable_response(request_id)

    if isinstance(result, NetworkFailure):
        request.state.outcome_code = CODE_NETWORK_FAILURE
        logger.warning(
            "upstream_network_failure",
            result="FAIL",
            code=CODE_NETWORK_FAILURE,
            error_type=result.error_type,
            error=result.message,
            user_query=preview(message, LOG_QUERY_PREVIEW_CHARS),
        )
        return build_service_unavailable_response(request_id)

    raise TypeError(f"Unclassified upstream result: {type(result).__name__}")
