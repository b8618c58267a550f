"""
Recursion-safe evaluation guard.

Why:
    Directory and edge reads performed during an authorization decision touch
    data that is itself protected by access-control hooks. Those hooks may ask
    helper predicates ("is this actor an admin of their tenant?") which read
    the same data again. Without a bypass this re-enters the access-control
    layer indefinitely.

Design:
    - A context variable marks the current call stack as elevated. It is set
      for exactly one port read and reset in `finally`; contextvars are per
      thread and per asyncio task, so concurrent evaluations never see each
      other's elevation.
    - `EvaluationCapability` is the only way to set the flag. Its constructor
      requires the issuer token the engine module binds once at import
      (`bind_issuer`); a second binding raises, so no other module can mint
      capabilities.
    - A capability only performs the read methods named by the directory and
      relationship store ports, never arbitrary callables, and is closed when
      the engine operation that issued it returns.
    - Adapters read `is_elevated()` to decide whether to bypass their own
      access-control layer (in-memory) or to allow evaluator reads at all
      (Postgres), and `read_budget_seconds()` / `evaluation_cancelled()` to
      bound in-flight statements by the caller's deadline.
"""

from __future__ import annotations

from contextvars import ContextVar
from typing import Any, NamedTuple, Optional

from .ports import CancelSignal, EvaluationCancelled

DIRECTORY_READS = frozenset({"get_actor", "get_actors", "list_actors"})
STORE_READS = frozenset(
    {"classes_taught_by", "classes_of_student", "students_of_guardian", "groups_of_member", "members_of_groups"}
)


class _ReadScope(NamedTuple):
    cancel: Optional[CancelSignal]
    budget_seconds: Optional[float]


_ELEVATED: ContextVar[Optional[_ReadScope]] = ContextVar("schulhof_messaging_elevated", default=None)
_issuer: Optional[object] = None


def bind_issuer(token: object) -> None:
    """Register the single token allowed to issue capabilities.

    Raises:
        RuntimeError: when a token is already bound.
    """
    global _issuer
    if _issuer is not None:
        raise RuntimeError("evaluation_issuer_already_bound")
    _issuer = token


def is_elevated() -> bool:
    """True while an engine read runs in the elevated context."""
    return _ELEVATED.get() is not None


def read_budget_seconds() -> Optional[float]:
    """Seconds left on the caller's deadline for the current read, if known."""
    scope = _ELEVATED.get()
    return scope.budget_seconds if scope is not None else None


def evaluation_cancelled() -> bool:
    """True when the current read belongs to an evaluation whose signal fired."""
    scope = _ELEVATED.get()
    return bool(scope is not None and scope.cancel is not None and scope.cancel.is_set())


class EvaluationCapability:
    """Function-scoped, read-only bypass of the enclosing access-control layer."""

    __slots__ = ("_directory", "_store", "_cancel", "_closed")

    def __init__(self, issuer: object, directory: Any, store: Any, cancel: Optional[CancelSignal] = None) -> None:
        if _issuer is None or issuer is not _issuer:
            raise TypeError("EvaluationCapability can only be issued by the authorization engine")
        self._directory = directory
        self._store = store
        self._cancel = cancel
        self._closed = False

    def check_cancelled(self) -> None:
        if self._cancel is not None and self._cancel.is_set():
            raise EvaluationCancelled("evaluation_cancelled")

    def close(self) -> None:
        self._closed = True

    def _budget(self) -> Optional[float]:
        remaining = getattr(self._cancel, "remaining", None)
        return float(remaining()) if callable(remaining) else None

    def read(self, op: str, *args, **kwargs):
        """Run one port read elevated; the flag is reset before returning."""
        if self._closed:
            raise PermissionError("evaluation_capability_closed")
        if op in DIRECTORY_READS:
            target = self._directory
        elif op in STORE_READS:
            target = self._store
        else:
            raise PermissionError(f"read_not_allowed:{op}")
        self.check_cancelled()
        token = _ELEVATED.set(_ReadScope(self._cancel, self._budget()))
        try:
            result = getattr(target, op)(*args, **kwargs)
        finally:
            _ELEVATED.reset(token)
        # A signal that fired during the read discards its result.
        self.check_cancelled()
        return result


__all__ = ["EvaluationCapability", "is_elevated", "read_budget_seconds", "evaluation_cancelled"]
