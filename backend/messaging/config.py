"""
Configuration parsing and startup checks for messaging authorization.

Intent:
    Provide a single place to read the environment variables that control the
    evaluator DSN, statement timeouts, request deadlines and the group channel.

Why:
    Centralising configuration reduces drift across the web layer, the CLI and
    tests, and keeps validation and defaults explicit. Production safety checks
    abort startup instead of failing on the first request.
"""
from __future__ import annotations

from dataclasses import dataclass
import os
import re
from typing import Optional
from urllib.parse import urlparse

from .policy import MessagingPolicy, build_policy

# Application role used by request handlers; RLS applies to every query it runs.
LIMITED_ROLE = "schulhof_limited"


@dataclass(frozen=True)
class MessagingAuthzConfig:
    environment: str
    evaluator_dsn: Optional[str]
    statement_timeout_ms: int
    request_deadline_seconds: int
    group_channel: bool
    trust_gateway_header: bool


def _int_env(name: str, default: int, *, lo: int, hi: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got: {raw!r}")
    if value < lo or value > hi:
        raise ValueError(f"{name} out of range ({lo}..{hi}), got: {value}")
    return value


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def is_prod_like(env: Optional[str] = None) -> bool:
    env_l = (env if env is not None else os.getenv("SCHULHOF_ENV", "dev") or "").lower()
    return env_l in {"prod", "production", "stage", "staging"}


def dsn_username(dsn: str) -> str:
    """Extract the login user from URL or keyword DSNs; empty when absent."""
    try:
        parsed = urlparse(dsn)
        if parsed.username:
            return parsed.username
    except Exception:
        pass
    m = re.search(r"\buser\s*=\s*([^\s]+)", dsn or "")
    return m.group(1) if m else ""


def load_messaging_config() -> MessagingAuthzConfig:
    """
    Parse and validate messaging configuration from environment variables.

    Behavior:
        - `MESSAGING_DATABASE_URL` wins over `DATABASE_URL` for the evaluator DSN.
        - `MESSAGING_STATEMENT_TIMEOUT_MS` in 1..60000 (default 2000).
        - `MESSAGING_REQUEST_DEADLINE_SECONDS` in 1..60 (default 5).
        - `MESSAGING_GROUP_CHANNEL` toggles the shared-group rule (default on).
        - `MESSAGING_TRUST_GATEWAY_HEADER` enables identity from the gateway header.
    """
    if _bool_env("SCHULHOF_LOAD_DOTENV", False):
        from dotenv import load_dotenv

        load_dotenv()
    env = (os.getenv("SCHULHOF_ENV") or "dev").strip().lower()
    dsn = (os.getenv("MESSAGING_DATABASE_URL") or os.getenv("DATABASE_URL") or "").strip() or None
    return MessagingAuthzConfig(
        environment=env,
        evaluator_dsn=dsn,
        statement_timeout_ms=_int_env("MESSAGING_STATEMENT_TIMEOUT_MS", 2000, lo=1, hi=60000),
        request_deadline_seconds=_int_env("MESSAGING_REQUEST_DEADLINE_SECONDS", 5, lo=1, hi=60),
        group_channel=_bool_env("MESSAGING_GROUP_CHANNEL", True),
        trust_gateway_header=_bool_env("MESSAGING_TRUST_GATEWAY_HEADER", False),
    )


def ensure_secure_config_on_startup(cfg: Optional[MessagingAuthzConfig] = None) -> MessagingPolicy:
    """Fail fast on insecure production configuration and validate the policy.

    Checks:
    - The rule table is valid (PolicyMismatch surfaces here, never per request).
    - In prod-like envs the evaluator DSN is set, does not disable TLS and
      does not authenticate as the RLS-limited application role (that role
      cannot read the edges an evaluation needs).

    Returns the validated policy so callers can wire it into the engine.
    """
    cfg = cfg or load_messaging_config()
    policy = build_policy(group_channel=cfg.group_channel)
    if not is_prod_like(cfg.environment):
        return policy  # dev/test remain permissive

    if not cfg.evaluator_dsn:
        raise SystemExit("Refusing to start: MESSAGING_DATABASE_URL is unset in production.")
    if "sslmode=disable" in cfg.evaluator_dsn:
        raise SystemExit(
            "Refusing to start: MESSAGING_DATABASE_URL contains sslmode=disable in production. Use sslmode=require."
        )
    if dsn_username(cfg.evaluator_dsn).lower() == LIMITED_ROLE:
        raise SystemExit(
            f"Refusing to start: MESSAGING_DATABASE_URL authenticates as '{LIMITED_ROLE}'. "
            "Use the read-only evaluator login instead."
        )
    return policy


__all__ = [
    "LIMITED_ROLE",
    "MessagingAuthzConfig",
    "load_messaging_config",
    "ensure_secure_config_on_startup",
    "is_prod_like",
    "dsn_username",
]
