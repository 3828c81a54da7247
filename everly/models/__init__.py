"""Everly models package.

  - upstream.py   — UpstreamResult variants and the broker reply schema
  - responses.py  — client-facing response builders (errors, passthrough)
"""
