"""Per-caller token bucket rate limiting.

Algorithm
---------
One bucket per caller key, created lazily on first sight with a full
allowance. Capacity is ``burst``; the bucket refills at
``rate_per_minute / 60`` tokens per second. Refill is applied lazily on every
access: the elapsed time since ``last_refill_at`` times the refill rate is
added to ``tokens`` and capped at capacity *before* admission is decided.
A request is admitted when ``tokens >= 1`` (one token is consumed); otherwise
it is rejected with HTTP 429 / ``RATE_LIMITED``.

Concurrency
-----------
Refill + check + decrement happen under the bucket's own ``threading.Lock``,
so two concurrent requests sharing a key can never both consume the last
token. Requests for distinct keys only share the short critical sections that
look up (or create) their bucket in the map. Once a request holds the bucket
lock it re-checks that the bucket is still the one mapped to its key, since
:meth:`TokenBucketRateLimiter.prune` may have dropped it in between; prune
never touches a locked bucket, so the admission that follows is final.

Memory
------
Buckets live for the process lifetime. :meth:`TokenBucketRateLimiter.prune`
drops buckets that would be full after refill; such a bucket is
indistinguishable from a freshly created one, so pruning never changes an
admission decision. The application lifespan calls it periodically.
"""

from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from fastapi import Request
from slowapi.util import get_remote_address

from everly.constants import CODE_RATE_LIMITED, MSG_RATE_LIMITED
from everly.guards.base import Continue, GuardVerdict, Reject, RequestContext
from everly.utils.logger import get_logger

logger = get_logger(__name__)

Clock = Callable[[], float]
KeyFunc = Callable[[Request], str]


@dataclass
class RateLimitBucket:
    """Token state for one caller key. Guarded by ``lock``."""

    tokens: float
    last_refill_at: float
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)


class TokenBucketRateLimiter:
    """Keyed, in-process token bucket store.

    Args:
        rate_per_minute: Steady-state admissions per minute per key (> 0).
        burst:           Bucket capacity (>= 1).
        clock:           Monotonic time source in seconds (injectable for tests).
    """

    def __init__(
        self,
        rate_per_minute: float,
        burst: int,
        clock: Clock = time.monotonic,
    ) -> None:
        if rate_per_minute <= 0:
            raise ValueError(f"rate_per_minute must be > 0, got {rate_per_minute}")
        if burst < 1:
            raise ValueError(f"burst must be >= 1, got {burst}")

        self.rate_per_minute = float(rate_per_minute)
        self.capacity = float(burst)
        self.refill_per_second = self.rate_per_minute / 60.0
        self._clock = clock
        self._buckets: dict[str, RateLimitBucket] = {}
        self._map_lock = threading.Lock()

    # ── Bucket access ────────────────────────────────────────────────────────

    def _bucket_for(self, key: str) -> RateLimitBucket:
        with self._map_lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                bucket = RateLimitBucket(tokens=self.capacity, last_refill_at=self._clock())
                self._buckets[key] = bucket
            return bucket

    def _is_current(self, key: str, bucket: RateLimitBucket) -> bool:
        with self._map_lock:
            return self._buckets.get(key) is bucket

    def _refill(self, bucket: RateLimitBucket, now: float) -> None:
        # Caller holds bucket.lock. A clock that steps backwards adds nothing.
        elapsed = max(0.0, now - bucket.last_refill_at)
        bucket.tokens = min(self.capacity, bucket.tokens + elapsed * self.refill_per_second)
        bucket.last_refill_at = now

    # ── Public API ───────────────────────────────────────────────────────────

    def try_acquire(self, key: str) -> bool:
        """Consume one token for ``key`` if available.

        Returns:
            True if the request is admitted, False if the bucket is empty.
        """
        while True:
            bucket = self._bucket_for(key)
            with bucket.lock:
                # prune() may have dropped the bucket between lookup and lock
                if not self._is_current(key, bucket):
                    continue
                self._refill(bucket, self._clock())
                if bucket.tokens >= 1.0:
                    bucket.tokens -= 1.0
                    return True
                return False

    def tokens(self, key: str) -> float:
        """Current (refilled) token count for ``key``; capacity for unseen keys."""
        with self._map_lock:
            bucket = self._buckets.get(key)
        if bucket is None:
            return self.capacity
        with bucket.lock:
            self._refill(bucket, self._clock())
            return bucket.tokens

    def retry_after(self, key: str) -> int:
        """Whole seconds until ``key`` has at least one token (0 if it has one now)."""
        missing = 1.0 - self.tokens(key)
        if missing <= 0:
            return 0
        return max(1, math.ceil(missing / self.refill_per_second))

    def prune(self) -> int:
        """Drop buckets that have refilled to capacity.

        Returns:
            Number of buckets removed.
        """
        now = self._clock()
        removed = 0
        with self._map_lock:
            for key in list(self._buckets):
                bucket = self._buckets[key]
                # Skip buckets another request is updating right now.
                if not bucket.lock.acquire(blocking=False):
                    continue
                try:
                    self._refill(bucket, now)
                    if bucket.tokens >= self.capacity:
                        del self._buckets[key]
                        removed += 1
                finally:
                    bucket.lock.release()
        if removed:
            logger.debug("rate_limit_buckets_pruned", removed=removed, remaining=len(self))
        return removed

    def reset(self) -> None:
        """Forget every bucket."""
        with self._map_lock:
            self._buckets.clear()

    def __len__(self) -> int:
        return len(self._buckets)

    def __contains__(self, key: object) -> bool:
        return key in self._buckets


class RateLimitGuard:
    """Guard admitting requests through a :class:`TokenBucketRateLimiter`.

    Args:
        limiter:  Shared bucket store.
        key_func: Derives the caller key from the request
                  (default: client network address).
    """

    id = "rate-limit"

    def __init__(
        self,
        limiter: TokenBucketRateLimiter,
        key_func: Optional[KeyFunc] = None,
    ) -> None:
        self.limiter = limiter
        self.key_func: KeyFunc = key_func or get_remote_address

    async def check(self, request: Request, context: RequestContext) -> GuardVerdict:
        key = self.key_func(request)
        if self.limiter.try_acquire(key):
            return Continue(context)

        retry_after = self.limiter.retry_after(key)
        logger.warning(
            "rate_limit_exceeded",
            caller_key=key,
            rate_per_minute=self.limiter.rate_per_minute,
            burst=int(self.limiter.capacity),
            retry_after_s=retry_after,
        )
        return Reject(
            http_status=429,
            user_message=MSG_RATE_LIMITED,
            internal_code=CODE_RATE_LIMITED,
            guard_id=self.id,
            retry_after=retry_after,
        )
