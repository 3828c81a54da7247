"""Outbound side of the gateway.

  - engine.py      — POST /api/chat handler (guard chain → broker call → response)
  - upstream.py    — UpstreamCaller, shared httpx client factory, classification
  - signing.py     — canonical request + HMAC-SHA256 signature
  - middleware.py  — body size cap, access log
"""
