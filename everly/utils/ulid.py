"""Correlation identifier generation for the Everly gateway.

Provides a single `generate_request_id()` function returning a 26-character
ULID (Universally Unique Lexicographically Sortable Identifier). It is used as:
  - the ``request_id`` bound into every structured log line of a request
  - the ``X-Everly-Request-ID`` diagnostic response header

A ULID is 128 bits (48-bit millisecond timestamp + 80 random bits), Crockford
Base32 encoded, URL-safe, with negligible collision probability.

Uses the `python-ulid` library (see pyproject.toml).
"""

from __future__ import annotations

from ulid import ULID


def generate_request_id() -> str:
    """Generate a new correlation id as a 26-character uppercase ULID string.

    Returns:
        str: e.g. ``"01KJ0JRVHYA7KX32VPN5ZSCTMV"``; charset ``[0-9A-HJKMNP-TV-Z]``.
    """
    return str(ULID())
