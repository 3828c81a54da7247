"""Guard chain primitives for the Everly gateway.

Every inbound ``POST /api/chat`` request is evaluated by an ordered chain of
guards. A guard is an async callable object that inspects the request and the
current :class:`RequestContext` and returns exactly one verdict:

  - :class:`Continue` — pass the (possibly enriched) context to the next guard
  - :class:`Reject`   — stop the chain and answer with the guard's status/message

The context is a frozen dataclass. Guards that add information (the identity
tagger adds the correlation id, the validator adds the trimmed message) return
a new context built with :func:`dataclasses.replace`; nothing shared between
concurrent requests is mutated by the chain itself.

Chain order is load-bearing:
  1. identity tagging   — so that every later rejection is traceable
  2. rate limiting      — reject abusive volume before the body is parsed
  3. validation         — only well-formed messages reach the upstream call
"""

from __future__ import annotations

import time
from dataclasses import dataclass, replace
from typing import Optional, Protocol, Sequence, Union

from fastapi import Request
from slowapi.util import get_remote_address

from everly.utils.logger import get_logger

logger = get_logger(__name__)


class ValidatedMessage(str):
    """A user message that passed validation: trimmed, non-empty, within bounds.

    Only :class:`everly.guards.validation.RequestValidationGuard` constructs it.
    """

    __slots__ = ()


@dataclass(frozen=True)
class RequestContext:
    """Per-request state threaded through the guard chain.

    Attributes:
        caller_key: Client network address (rate-limit key by default).
        arrived_at: Wall-clock arrival time (epoch seconds).
        request_id: Correlation id; empty until the identity guard runs.
        message:    Trimmed message; None until the validation guard runs.
    """

    caller_key: str
    arrived_at: float
    request_id: str = ""
    message: Optional[ValidatedMessage] = None


@dataclass(frozen=True)
class Continue:
    """Verdict: proceed to the next guard with ``context``."""

    context: RequestContext


@dataclass(frozen=True)
class Reject:
    """Verdict: terminate the request.

    Attributes:
        http_status:   Status code returned to the caller (400, 413, 429...).
        user_message:  Generic, caller-safe message (``{"error": ...}``).
        internal_code: Stable code for logs (e.g. ``RATE_LIMITED``).
        guard_id:      Id of the guard that rejected.
        retry_after:   Optional seconds hint, sent as ``Retry-After``.
    """

    http_status: int
    user_message: str
    internal_code: str
    guard_id: str = ""
    retry_after: Optional[int] = None


GuardVerdict = Union[Continue, Reject]


class Guard(Protocol):
    """An admission check in the chain."""

    id: str

    async def check(self, request: Request, context: RequestContext) -> GuardVerdict:
        ...


@dataclass(frozen=True)
class ChainResult:
    """Outcome of a full chain run.

    ``rejection`` is None when every guard continued; ``context`` is the last
    context that was threaded (the rejecting guard's input on rejection).
    """

    context: RequestContext
    rejection: Optional[Reject] = None

    @property
    def admitted(self) -> bool:
        return self.rejection is None


class GuardChain:
    """Ordered, short-circuiting executor over a sequence of guards."""

    def __init__(self, guards: Sequence[Guard]) -> None:
        self._guards: tuple[Guard, ...] = tuple(guards)

    @property
    def guard_ids(self) -> list[str]:
        return [guard.id for guard in self._guards]

    def initial_context(self, request: Request) -> RequestContext:
        return RequestContext(
            caller_key=get_remote_address(request),
            arrived_at=time.time(),
        )

    async def run(self, request: Request) -> ChainResult:
        """Evaluate every guard in order until one rejects.

        On rejection the verdict is logged and stored on
        ``request.state.guard_verdict`` for the access log; guards after the
        rejecting one are never invoked.
        """
        context = self.initial_context(request)

        for guard in self._guards:
            verdict = await guard.check(request, context)

            if isinstance(verdict, Reject):
                if not verdict.guard_id:
                    verdict = replace(verdict, guard_id=guard.id)
                request.state.guard_verdict = verdict
                logger.info(
                    "guard_rejected",
                    guard=verdict.guard_id,
                    code=verdict.internal_code,
                    status_code=verdict.http_status,
                    caller_key=context.caller_key,
                )
                return ChainResult(context=context, rejection=verdict)

            context = verdict.context

        return ChainResult(context=context)
