"""
Messaging authorization API routes: contact list and permission checks.

Why:
    The messaging UI needs the list of users the caller may start a
    conversation with, and the message service asks for a yes/no before it
    accepts a direct message. Both delegate to the authorization engine.

Notes:
    - The caller is always `request.state.user["sub"]`; there is no way to ask
      on behalf of somebody else.
    - Persistence: prefers the Postgres-backed repo when psycopg and a DSN are
      available; falls back to an empty in-memory repo for tests/offline work.
      Tests call `set_engine` to override the implementation for isolation.
    - Each request gets a deadline (MESSAGING_REQUEST_DEADLINE_SECONDS) that
      aborts in-flight relationship lookups.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from backend.messaging.config import ensure_secure_config_on_startup, is_prod_like, load_messaging_config
from backend.messaging.engine import MessagingAuthorizationEngine
from backend.messaging.ports import (
    ActorNotFound,
    ActorNotProvisioned,
    DataSourceUnavailable,
    Deadline,
    EvaluationCancelled,
)
from backend.messaging.repo_memory import InMemoryMessagingRepo

messaging_router = APIRouter(tags=["Messaging"])
logger = logging.getLogger("schulhof.web.messaging")

try:  # late import to avoid hard dependency during unit tests
    from backend.messaging.repo_db import DBMessagingRepo  # type: ignore
except Exception as exc:  # pragma: no cover - import failures in dev/test envs
    DBMessagingRepo = None  # type: ignore
    _DB_REPO_IMPORT_ERROR: Optional[Exception] = exc
else:
    _DB_REPO_IMPORT_ERROR = None


def _build_default_engine() -> MessagingAuthorizationEngine:
    """Prefer the DB-backed repo; fall back to an empty in-memory repo if unavailable.

    Production-like environments never fall back: an empty directory would
    answer every request with `not_found`.
    """
    cfg = load_messaging_config()
    policy = ensure_secure_config_on_startup(cfg)
    prod = is_prod_like(cfg.environment)
    repo = None
    if DBMessagingRepo is None:
        if prod:
            raise RuntimeError("DBMessagingRepo unavailable in production") from _DB_REPO_IMPORT_ERROR
        if _DB_REPO_IMPORT_ERROR:
            logger.warning("Messaging repo import failed: %s", _DB_REPO_IMPORT_ERROR.__class__.__name__)
    else:
        try:
            repo = DBMessagingRepo(cfg.evaluator_dsn, statement_timeout_ms=cfg.statement_timeout_ms)
        except Exception as exc:
            if prod:
                raise
            logger.warning("Messaging repo unavailable (%s); using in-memory fallback", exc.__class__.__name__)
    if repo is None:
        repo = InMemoryMessagingRepo()
    return MessagingAuthorizationEngine(repo, repo, policy)


_ENGINE: Optional[MessagingAuthorizationEngine] = None


def get_engine() -> MessagingAuthorizationEngine:
    global _ENGINE
    if _ENGINE is None:
        _ENGINE = _build_default_engine()
    return _ENGINE


def set_engine(engine: Optional[MessagingAuthorizationEngine]) -> None:
    """Override the engine (tests); `None` rebuilds the default lazily."""
    global _ENGINE
    _ENGINE = engine


def _private_response(body, *, status_code: int = 200, headers: Optional[dict] = None) -> JSONResponse:
    hdrs = {"Cache-Control": "private, no-store"}
    hdrs.update(headers or {})
    return JSONResponse(body, status_code=status_code, headers=hdrs)


def _current_sub(request: Request) -> Optional[str]:
    user = getattr(request.state, "user", None)
    sub = (user or {}).get("sub") if isinstance(user, dict) else None
    return str(sub) if sub else None


def _error_response(exc: Exception) -> JSONResponse:
    if isinstance(exc, ActorNotFound):
        return _private_response({"error": "not_found"}, status_code=404)
    if isinstance(exc, ActorNotProvisioned):
        return _private_response({"error": "actor_not_provisioned"}, status_code=409)
    if isinstance(exc, EvaluationCancelled):
        return _private_response({"error": "deadline_exceeded"}, status_code=504)
    if isinstance(exc, DataSourceUnavailable):
        return _private_response({"error": "service_unavailable"}, status_code=503, headers={"Retry-After": "1"})
    raise exc


def _deadline() -> Deadline:
    return Deadline(load_messaging_config().request_deadline_seconds)


@messaging_router.get("/api/messaging/contacts")
async def list_messaging_contacts(request: Request):
    """List users the caller may message, sorted by first name, last name, id.

    Permissions:
        Any authenticated user; the result is derived from the caller's own role.
    """
    sub = _current_sub(request)
    if not sub:
        return _private_response({"error": "unauthenticated"}, status_code=401)
    engine = get_engine()
    try:
        contacts = await run_in_threadpool(engine.messageable_set, sub, cancel=_deadline())
    except (ActorNotFound, ActorNotProvisioned, DataSourceUnavailable, EvaluationCancelled) as exc:
        logger.warning("contacts failed sub=%s err=%s", sub[-6:], exc.__class__.__name__)
        return _error_response(exc)
    return _private_response([c.to_dict() for c in contacts])


@messaging_router.get("/api/messaging/can-message/{target_id}")
async def can_message(request: Request, target_id: str):
    """Decide whether the caller may message `target_id`.

    Responses:
        200 `{allowed, reason}` for every decision, including denials.
        404 when the target does not exist.
    """
    sub = _current_sub(request)
    if not sub:
        return _private_response({"error": "unauthenticated"}, status_code=401)
    engine = get_engine()
    try:
        decision = await run_in_threadpool(engine.can_message_ids, sub, target_id, cancel=_deadline())
    except (ActorNotFound, ActorNotProvisioned, DataSourceUnavailable, EvaluationCancelled) as exc:
        logger.warning("can_message failed sub=%s err=%s", sub[-6:], exc.__class__.__name__)
        return _error_response(exc)
    return _private_response({"allowed": decision.allowed, "reason": decision.reason.value})
