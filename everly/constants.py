"""Shared constants for the Everly gateway.

Header names, endpoint paths, defaults and user-facing messages live here.
No magic numbers or literal messages in other modules — import from here.
"""

# ─── Upstream broker protocol ────────────────────────────────────────────────

# Path of the broker's chat endpoint, appended to upstream.base_url.
UPSTREAM_CHAT_PATH: str = "/api/v1/chat"

# Path of the broker's liveness endpoint (probed by GET /health).
UPSTREAM_HEALTH_PATH: str = "/health"

# Version tag that opens every canonical request string.
SIGNATURE_VERSION: str = "v1"

HEADER_SENDER: str = "X-SynapSys-Sender"
HEADER_TIMESTAMP: str = "X-SynapSys-Timestamp"
HEADER_NONCE: str = "X-SynapSys-Nonce"
HEADER_SIGNATURE: str = "X-SynapSys-Signature"

# Diagnostic response header carrying the correlation id.
REQUEST_ID_HEADER: str = "X-Everly-Request-ID"

# ─── Defaults ────────────────────────────────────────────────────────────────

DEFAULT_UPSTREAM_TIMEOUT_S: float = 20.0
HEALTH_PROBE_TIMEOUT_S: float = 3.0

DEFAULT_MAX_MESSAGE_CHARS: int = 2000

DEFAULT_RATE_PER_MINUTE: float = 10.0
DEFAULT_BURST: int = 5

# How often idle (already full) buckets are dropped. 0 disables pruning.
DEFAULT_PRUNE_INTERVAL_S: float = 300.0

# Hard cap on the inbound request body, enforced before any guard runs.
# A maximal message is a few KB of JSON; anything bigger is not a chat message.
MAX_REQUEST_BODY_BYTES: int = 65_536

# GET /health fans out to the broker, so it gets its own coarse cap.
HEALTH_RATE_LIMIT: str = "30/minute"

# Log entry previews (characters).
LOG_QUERY_PREVIEW_CHARS: int = 100
LOG_CONTENT_PREVIEW_CHARS: int = 250

# ─── Internal codes (logged, never shown to callers) ─────────────────────────

CODE_RATE_LIMITED: str = "RATE_LIMITED"
CODE_INVALID_PAYLOAD: str = "INVALID_PAYLOAD"
CODE_EMPTY_MESSAGE: str = "EMPTY_MESSAGE"
CODE_MESSAGE_TOO_LONG: str = "MESSAGE_TOO_LONG"
CODE_UPSTREAM_CLIENT_ERROR: str = "UPSTREAM_CLIENT_ERROR"
CODE_UPSTREAM_SERVER_ERROR: str = "UPSTREAM_SERVER_ERROR"
CODE_NETWORK_FAILURE: str = "NETWORK_FAILURE"
CODE_INTERNAL_ERROR: str = "INTERNAL_ERROR"

# ─── User-facing messages ────────────────────────────────────────────────────

MSG_RATE_LIMITED: str = "Too many requests. Please slow down."
MSG_BAD_REQUEST: str = "Bad request."
MSG_EMPTY_MESSAGE: str = "Message cannot be empty."
MSG_MESSAGE_TOO_LONG: str = "Message too long."
MSG_SERVICE_UNAVAILABLE: str = "Service unavailable. Please try again later."
MSG_INTERNAL_ERROR: str = "Internal server error."
MSG_PAYLOAD_TOO_LARGE: str = "Request body too large."
