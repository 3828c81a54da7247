#!/usr/bin/env python3
"""Mock SynapSys broker for local Everly runs.

Listens on port 8000, verifies the X-SynapSys-* signature of every chat call
(freshness window + nonce replay check included) and answers with a canned
reply. Start it, then point the gateway at it:

Usage:
    python3 demo/mock_synapsys.py
    SYNAPSYS_BASE_URL=http://127.0.0.1:8000 python -m everly.run
"""

import os
import random
import time

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from everly.constants import (
    HEADER_NONCE,
    HEADER_SENDER,
    HEADER_SIGNATURE,
    HEADER_TIMESTAMP,
    UPSTREAM_CHAT_PATH,
)
from everly.proxy.signing import verify_signature

CLIENT_KEY = os.getenv("SYNAPSYS_CLIENT_KEY", "demo-client-key")
MAX_SKEW_S = 300

app = FastAPI(title="Mock SynapSys broker")

_seen_nonces: set[str] = set()

REPLIES = [
    "Hi! I'm the SynapSys demo broker.",
    "Your message arrived signed and intact.",
    "Sunny with a light breeze, as far as a mock can tell.",
]


def _reject(status: int, reason: str) -> JSONResponse:
    return JSONResponse(status_code=status, content={"error": reason})


@app.post(UPSTREAM_CHAT_PATH)
async def chat(request: Request):
    body = await request.body()
    headers = request.headers

    timestamp = headers.get(HEADER_TIMESTAMP, "")
    nonce = headers.get(HEADER_NONCE, "")
    if not timestamp.isdigit() or abs(time.time() - int(timestamp)) > MAX_SKEW_S:
        return _reject(401, "stale or missing timestamp")
    if not nonce or nonce in _seen_nonces:
        return _reject(401, "nonce reused")

    path = request.url.path + (f"?{request.url.query}" if request.url.query else "")
    if not verify_signature(
        CLIENT_KEY,
        request.method,
        path,
        headers.get(HEADER_SENDER, ""),
        timestamp,
        nonce,
        body,
        headers.get(HEADER_SIGNATURE, ""),
    ):
        return _reject(401, "bad signature")
    _seen_nonces.add(nonce)

    payload = await request.json()
    return {
        "sender": "SynapSys",
        "content": random.choice(REPLIES),
        "metadata": {"status": "ok", "reason": f"echo:{len(payload.get('content', ''))}"},
    }


@app.get("/health")
async def health():
    return {"status": "ok", "service": "mock-synapsys"}


if __name__ == "__main__":
    print("Mock SynapSys broker on http://127.0.0.1:8000")
    uvicorn.run(app, host="127.0.0.1", port=8000, log_level="warning")
