"""Request payload validation guard — last link of the chain.

Reads the ``message`` field of the JSON body and enforces:
  - body is a JSON object and ``message`` is a string   → else 400 INVALID_PAYLOAD
  - ``message`` is non-empty after trimming             → else 400 EMPTY_MESSAGE
  - trimmed length <= ``max_message_chars``             → else 413 MESSAGE_TOO_LONG

On success the trimmed text (never the raw input) is placed in the context as
a :class:`ValidatedMessage`.
"""

from __future__ import annotations

import json
from dataclasses import replace
from typing import Any

from fastapi import Request

from everly.constants import (
    CODE_EMPTY_MESSAGE,
    CODE_INVALID_PAYLOAD,
    CODE_MESSAGE_TOO_LONG,
    MSG_BAD_REQUEST,
    MSG_EMPTY_MESSAGE,
    MSG_MESSAGE_TOO_LONG,
)
from everly.guards.base import Continue, GuardVerdict, Reject, RequestContext, ValidatedMessage

MESSAGE_FIELD = "message"

# Whitespace and line terminators trimmed from both ends, U+FEFF included
TRIM_CHARS = (
    "\t\n\v\f\r \u00a0\u1680"
    + "".join(chr(cp) for cp in range(0x2000, 0x200B))
    + "\u2028\u2029\u202f\u205f\u3000\ufeff"
)


def validate_message(raw: Any, max_chars: int) -> Reject | ValidatedMessage:
    """Normalise and bounds-check a raw ``message`` value.

    Returns:
        The trimmed :class:`ValidatedMessage`, or a :class:`Reject` verdict.
    """
    if not isinstance(raw, str):
        return Reject(400, MSG_BAD_REQUEST, CODE_INVALID_PAYLOAD)

    trimmed = raw.strip(TRIM_CHARS)
    if not trimmed:
        return Reject(400, MSG_EMPTY_MESSAGE, CODE_EMPTY_MESSAGE)

    if len(trimmed) > max_chars:
        return Reject(413, MSG_MESSAGE_TOO_LONG, CODE_MESSAGE_TOO_LONG)

    return ValidatedMessage(trimmed)


class RequestValidationGuard:
    id = "request-validation"

    def __init__(self, max_message_chars: int) -> None:
        if max_message_chars < 1:
            raise ValueError(f"max_message_chars must be >= 1, got {max_message_chars}")
        self.max_message_chars = max_message_chars

    async def check(self, request: Request, context: RequestContext) -> GuardVerdict:
        body = await request.body()
        try:
            payload = json.loads(body) if body else None
        except (ValueError, RecursionError):
            # ValueError covers bad JSON and bad UTF-8; deep nesting overflows the parser
            payload = None

        raw = payload.get(MESSAGE_FIELD) if isinstance(payload, dict) else None
        result = validate_message(raw, self.max_message_chars)
        if isinstance(result, Reject):
            return replace(result, guard_id=self.id)
        return Continue(replace(context, message=result))
