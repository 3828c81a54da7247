"""Canonical request signing for calls to the SynapSys broker.

Every outbound call is authenticated with an HMAC over a canonical string that
binds the method, path, sender identity, time, a single-use nonce and the
exact body bytes. The canonical string is the newline-joined sequence::

    v1
    <METHOD (upper-cased)>
    <path with query>
    <sender id>
    <timestamp (decimal epoch seconds)>
    <nonce (UUID)>
    <lowercase hex SHA-256 of the body bytes>

The signature is ``base64(HMAC-SHA256(key=client_key, msg=canonical))``.

Changing any one field changes the signature; replay is defeated by the
timestamp + nonce pair (staleness and nonce reuse are enforced by the broker).
The body hash must be computed over the bytes that are actually transmitted.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import time
import uuid
from dataclasses import dataclass
from typing import Optional

from everly.constants import (
    HEADER_NONCE,
    HEADER_SENDER,
    HEADER_SIGNATURE,
    HEADER_TIMESTAMP,
    SIGNATURE_VERSION,
)


def sha256_hex(body: bytes) -> str:
    return hashlib.sha256(body).hexdigest()


def new_nonce() -> str:
    """Return a fresh random UUID string. Never reuse one across calls."""
    return str(uuid.uuid4())


def current_timestamp() -> str:
    """Epoch seconds as a decimal string."""
    return str(int(time.time()))


@dataclass(frozen=True)
class CanonicalRequest:
    """The fields covered by the signature, in canonical order."""

    method: str
    path_with_query: str
    sender_id: str
    timestamp: str
    nonce: str
    body_sha256: str
    version: str = SIGNATURE_VERSION

    def canonical_string(self) -> str:
        return "\n".join(
            [
                self.version,
                self.method.upper(),
                self.path_with_query,
                self.sender_id,
                self.timestamp,
                self.nonce,
                self.body_sha256,
            ]
        )


@dataclass(frozen=True)
class SignedRequest:
    canonical: CanonicalRequest
    signature: str

    def headers(self) -> dict[str, str]:
        """The authentication headers sent alongside the body."""
        return {
            HEADER_SENDER: self.canonical.sender_id,
            HEADER_TIMESTAMP: self.canonical.timestamp,
            HEADER_NONCE: self.canonical.nonce,
            HEADER_SIGNATURE: self.signature,
        }


def build_canonical_string(
    method: str,
    path_with_query: str,
    sender_id: str,
    timestamp: str,
    nonce: str,
    body_sha256: str,
) -> str:
    return CanonicalRequest(
        method=method,
        path_with_query=path_with_query,
        sender_id=sender_id,
        timestamp=timestamp,
        nonce=nonce,
        body_sha256=body_sha256,
    ).canonical_string()


def compute_signature(secret: str, canonical: str) -> str:
    """base64-encoded HMAC-SHA256 of ``canonical`` keyed with ``secret``."""
    digest = hmac.new(
        secret.encode("utf-8"), canonical.encode("utf-8"), hashlib.sha256
    ).digest()
    return base64.b64encode(digest).decode("ascii")


def sign_request(
    secret: str,
    method: str,
    path_with_query: str,
    sender_id: str,
    body: bytes,
    timestamp: Optional[str] = None,
    nonce: Optional[str] = None,
) -> SignedRequest:
    """Hash ``body``, build the canonical request and sign it.

    ``timestamp`` and ``nonce`` are generated fresh unless supplied
    (tests pin them to get deterministic output).
    """
    canonical = CanonicalRequest(
        method=method.upper(),
        path_with_query=path_with_query,
        sender_id=sender_id,
        timestamp=timestamp if timestamp is not None else current_timestamp(),
        nonce=nonce if nonce is not None else new_nonce(),
        body_sha256=sha256_hex(body),
    )
    return SignedRequest(
        canonical=canonical,
        signature=compute_signature(secret, canonical.canonical_string()),
    )


def verify_signature(
    secret: str,
    method: str,
    path_with_query: str,
    sender_id: str,
    timestamp: str,
    nonce: str,
    body: bytes,
    signature: str,
) -> bool:
    """Recompute the signature for a received request and compare in constant time.

    Only checks integrity; freshness of ``timestamp`` and uniqueness of
    ``nonce`` are the receiver's responsibility.
    """
    expected = compute_signature(
        secret,
        build_canonical_string(
            method, path_with_query, sender_id, timestamp, nonce, sha256_hex(body)
        ),
    )
    return hmac.compare_digest(expected, signature)
