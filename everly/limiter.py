"""Shared slowapi limiter for the gateway's auxiliary endpoints.

``POST /api/chat`` is admitted by the token bucket in
everly/guards/rate_limit.py. GET /health is different: every call fans out
to the broker, so it gets a coarse fixed cap per client address here.

The Limiter instance is shared between:
  - everly/health.py  (route decorator)
  - everly/main.py    (app.state.limiter + SlowAPIMiddleware registration)
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address)
