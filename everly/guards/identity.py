"""Identity tagging guard — first link of the chain.

Assigns a fresh ULID correlation id to the request, binds it into the
structlog context so every later log line carries it, and exposes it on
``request.state.request_id`` for the response builders and the access log.
Never rejects.
"""

from __future__ import annotations

from dataclasses import replace

from fastapi import Request

from everly.guards.base import Continue, GuardVerdict, RequestContext
from everly.utils.logger import set_request_id
from everly.utils.ulid import generate_request_id


class IdentityGuard:
    id = "identity"

    async def check(self, request: Request, context: RequestContext) -> GuardVerdict:
        request_id = generate_request_id()
        set_request_id(request_id)
        request.state.request_id = request_id
        return Continue(replace(context, request_id=request_id))
