"""
FastAPI application for the Schulhof messaging authorization service.

Why: The messaging service and the API gateway ask this service who a user
may message. Authentication happens upstream; the gateway forwards the
verified subject in `X-Authenticated-Sub`. The header is only trusted when
`MESSAGING_TRUST_GATEWAY_HEADER=true`, otherwise every API call is 401.

Permissions: Callers only ever learn about their own messaging permissions.
"""
from __future__ import annotations

import logging
import os

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from backend.messaging.config import ensure_secure_config_on_startup, load_messaging_config
from backend.web.routes.messaging import messaging_router

logger = logging.getLogger("schulhof.web")
GATEWAY_SUB_HEADER = "X-Authenticated-Sub"

# Refuse to boot on insecure prod config or a broken policy table.
ensure_secure_config_on_startup()

app = FastAPI(title="Schulhof messaging authz", description="Wer darf wem schreiben?", version="0.1.0")
app.include_router(messaging_router)


def _is_public_path(path: str) -> bool:
    return path in ("/health", "/favicon.ico")


@app.middleware("http")
async def auth_enforcement(request: Request, call_next):
    path = request.url.path
    if _is_public_path(path):
        return await call_next(request)

    sub = None
    if load_messaging_config().trust_gateway_header:
        sub = (request.headers.get(GATEWAY_SUB_HEADER) or "").strip() or None
    if not sub:
        headers = {"Cache-Control": "private, no-store", "Vary": "Origin"}
        return JSONResponse({"error": "unauthenticated"}, status_code=401, headers=headers)

    # Expose minimal, read-only user context for downstream handlers.
    request.state.user = {"sub": sub}
    return await call_next(request)


@app.middleware("http")
async def security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("Referrer-Policy", "no-referrer")
    if (os.getenv("SCHULHOF_ENV") or "dev").lower() == "prod":
        response.headers.setdefault("Strict-Transport-Security", "max-age=31536000; includeSubDomains")
    return response


@app.get("/health")
async def health_check():
    # Minimal health endpoint used by orchestrators and tests.
    # Security: include no-store to avoid caching any runtime status.
    return JSONResponse({"status": "healthy"}, headers={"Cache-Control": "private, no-store"})
