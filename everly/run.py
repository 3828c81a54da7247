"""Programmatic uvicorn entry point for the Everly gateway.

Reads host and port from the loaded config (127.0.0.1:3000 by default) and
starts uvicorn with hardened connection limits.

Usage:
    python -m everly.run
    everly                     # via pyproject.toml [project.scripts]

Binding to 0.0.0.0 is allowed but logs a warning at startup
(see everly/config.py:validate_config).
"""

from __future__ import annotations

import uvicorn

from everly.config import load_config

# Must match the httpx pool size (POOL_MAX_CONNECTIONS in everly/proxy/upstream.py).
UVICORN_LIMIT_CONCURRENCY: int = 100

UVICORN_BACKLOG: int = 50

# Low keep-alive narrows the slow-client window.
UVICORN_TIMEOUT_KEEP_ALIVE: int = 5


def main() -> None:
    """Start the gateway.

    Raises:
        SystemExit: Propagated from load_config() on config errors.
    """
    config = load_config()

    uvicorn.run(
        "everly.main:app",
        host=config.server.host,
        port=config.server.port,
        limit_concurrency=UVICORN_LIMIT_CONCURRENCY,
        backlog=UVICORN_BACKLOG,
        timeout_keep_alive=UVICORN_TIMEOUT_KEEP_ALIVE,
        proxy_headers=True,
    )


if __name__ == "__main__":
    main()
