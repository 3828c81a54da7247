"""Health utility classes and functions for the Everly gateway.

Provides:
  - UpstreamLatencyTracker — rolling window of the last N broker call latencies
  - UpstreamHealth         — dataclass snapshot of the broker probe
  - probe_upstream()       — GET {base_url}/health with a short timeout
"""

from __future__ import annotations

import time
from collections import deque
from dataclasses import asdict, dataclass
from typing import Any, Optional

import httpx

from everly.constants import HEALTH_PROBE_TIMEOUT_S, UPSTREAM_HEALTH_PATH

# ─── Data Types ───────────────────────────────────────────────────────────────


@dataclass
class UpstreamHealth:
    """Result of one broker liveness probe.

    Attributes:
        status:      "ok" (2xx), "error" (non-2xx answer), "down" (no answer),
                     "unknown" (not configured).
        status_code: HTTP status of the probe, if any.
        latency_ms:  Round trip in milliseconds, for answered probes.
        error:       Short error description (never the broker's body).
    """

    status: str
    status_code: Optional[int] = None
    latency_ms: Optional[float] = None
    error: Optional[str] = None

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


# ─── UpstreamLatencyTracker ───────────────────────────────────────────────────


class UpstreamLatencyTracker:
    """Rolling window of broker call latencies (last *window* samples).

    Used by ``/health`` to report ``avg_ms`` and ``p99_ms`` without storing
    unbounded history. All access happens on the event loop.

    Usage::

        tracker = UpstreamLatencyTracker()
        tracker.record(120.5)
        tracker.avg_ms, tracker.p99_ms, tracker.count
    """

    def __init__(self, window: int = 100) -> None:
        self._times: deque[float] = deque(maxlen=window)

    def record(self, duration_ms: float) -> None:
        """Append a latency sample; the oldest one is evicted when full."""
        self._times.append(duration_ms)

    @property
    def avg_ms(self) -> float:
        if not self._times:
            return 0.0
        return sum(self._times) / len(self._times)

    @property
    def p99_ms(self) -> float:
        """99th percentile; 0.0 until at least 10 samples exist."""
        if len(self._times) < 10:
            return 0.0
        sorted_times = sorted(self._times)
        idx = max(0, int(len(sorted_times) * 0.99) - 1)
        return sorted_times[idx]

    @property
    def count(self) -> int:
        return len(self._times)


# ─── Broker probe ─────────────────────────────────────────────────────────────


async def probe_upstream(
    http_client: httpx.AsyncClient,
    base_url: str,
    timeout_s: float = HEALTH_PROBE_TIMEOUT_S,
) -> UpstreamHealth:
    """Probe ``{base_url}/health``.

    Never raises for transport errors; they are reported as ``status="down"``.
    """
    if not base_url:
        return UpstreamHealth(status="unknown", error="upstream base URL not configured")

    started = time.perf_counter()
    try:
        response = await http_client.get(
            f"{base_url.rstrip('/')}{UPSTREAM_HEALTH_PATH}",
            timeout=timeout_s,
        )
    except httpx.HTTPError as exc:
        return UpstreamHealth(status="down", error=type(exc).__name__)

    latency_ms = round((time.perf_counter() - started) * 1000, 1)
    if 200 <= response.status_code < 300:
        return UpstreamHealth(status="ok", status_code=response.status_code, latency_ms=latency_ms)
    return UpstreamHealth(
        status="error",
        status_code=response.status_code,
        latency_ms=latency_ms,
        error=f"HTTP {response.status_code}",
    )
