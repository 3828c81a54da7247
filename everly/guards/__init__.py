"""Admission guards for ``POST /api/chat``.

  - base.py        — RequestContext, Continue/Reject verdicts, GuardChain executor
  - identity.py    — IdentityGuard (correlation id; never rejects)
  - rate_limit.py  — TokenBucketRateLimiter + RateLimitGuard (429)
  - validation.py  — RequestValidationGuard (400 / 413)
"""

from __future__ import annotations

from everly.guards.base import (
    ChainResult,
    Continue,
    Guard,
    GuardChain,
    GuardVerdict,
    Reject,
    RequestContext,
    ValidatedMessage,
)
from everly.guards.identity import IdentityGuard
from everly.guards.rate_limit import RateLimitGuard, TokenBucketRateLimiter
from everly.guards.validation import RequestValidationGuard


def build_guard_chain(limiter: TokenBucketRateLimiter, max_message_chars: int) -> GuardChain:
    """Return the production chain: identity → rate limit → validation."""
    return GuardChain(
        [
            IdentityGuard(),
            RateLimitGuard(limiter),
            RequestValidationGuard(max_message_chars),
        ]
    )


__all__ = [
    "ChainResult",
    "Continue",
    "Guard",
    "GuardChain",
    "GuardVerdict",
    "IdentityGuard",
    "RateLimitGuard",
    "Reject",
    "RequestContext",
    "RequestValidationGuard",
    "TokenBucketRateLimiter",
    "ValidatedMessage",
    "build_guard_chain",
]
