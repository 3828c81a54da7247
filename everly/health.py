"""Health endpoint for the Everly gateway.

GET /health reports the gateway process itself and probes the broker's own
``/health`` endpoint (3 s timeout). It returns HTTP 503 until the lifespan
has finished startup, and is capped per client by the shared slowapi limiter
because every call reaches the broker.

Response body (200):
    {
      "self": {"status": "ok", "pid": 1234, "uptime_seconds": 42},
      "synapsys": {"status": "ok" | "error" | "down" | "unknown",
                   "status_code": 200, "latency_ms": 12.5, "error": null},
      "upstream_calls": {"count": 17, "avg_ms": 230.1, "p99_ms": 0.0},
      "rate_limit": {"tracked_keys": 3}
    }
"""

import os
import time
from typing import Any, Optional

from fastapi import APIRouter, HTTPException, Request

from everly.config import Config
from everly.constants import HEALTH_RATE_LIMIT
from everly.guards.rate_limit import TokenBucketRateLimiter
from everly.limiter import limiter
from everly.utils.health import UpstreamLatencyTracker, probe_upstream

router = APIRouter(tags=["health"])


@router.get("/health")
@limiter.limit(HEALTH_RATE_LIMIT)
async def health(request: Request) -> dict[str, Any]:
    if not getattr(request.app.state, "ready", False):
        raise HTTPException(status_code=503, detail="Everly is starting up.")

    config: Config = request.app.state.config
    started_at: float = request.app.state.started_at

    synapsys = await probe_upstream(request.app.state.http_client, config.upstream.base_url)

    latency: Optional[UpstreamLatencyTracker] = getattr(
        request.app.state, "latency_tracker", None
    )
    rate_limiter: Optional[TokenBucketRateLimiter] = getattr(
        request.app.state, "rate_limiter", None
    )

    return {
        "self": {
            "status": "ok",
            "pid": os.getpid(),
            "uptime_seconds": int(time.monotonic() - started_at),
        },
        "synapsys": synapsys.as_dict(),
        "upstream_calls": {
            "count": latency.count if latency else 0,
            "avg_ms": round(latency.avg_ms, 1) if latency else 0.0,
            "p99_ms": round(latency.p99_ms, 1) if latency else 0.0,
        },
        "rate_limit": {"tracked_keys": len(rate_limiter) if rate_limiter else 0},
    }
