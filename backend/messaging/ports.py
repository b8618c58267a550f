"""
Ports for messaging authorization: collaborator protocols, cancellation and errors.

Intent:
    Provide framework-agnostic contracts between the engine and concrete
    adapters (Postgres, in-memory). Keeping these definitions in a dedicated
    module avoids circular imports and clarifies boundaries.

Design:
    - Protocols: IdentityDirectoryProtocol, RelationshipStoreProtocol, CancelSignal
    - Deadline: request-scoped cancellation signal based on a monotonic clock
    - Error taxonomy: not found vs. not provisioned vs. transient data source
      failure vs. static policy mismatch. Denials are not errors.
"""

from __future__ import annotations

import time
from typing import Iterable, Optional, Protocol, Sequence, Set

from .domain import Actor, Role


# ----------------------------- Protocols ------------------------------------


class IdentityDirectoryProtocol(Protocol):
    """Read-only actor lookup owned by the directory service."""

    def get_actor(self, actor_id: str) -> Optional[Actor]:
        ...

    def get_actors(self, actor_ids: Iterable[str]) -> list[Actor]:
        ...

    def list_actors(self, *, tenant_id: Optional[str], roles: Iterable[Role]) -> list[Actor]:
        """List actors with one of `roles`; `tenant_id=None` lists every tenant."""
        ...


class RelationshipStoreProtocol(Protocol):
    """Edge lookups backing the relationship graph. All methods are read-only."""

    def classes_taught_by(self, teacher_id: str) -> Set[str]:
        ...

    def classes_of_student(self, student_id: str) -> Set[str]:
        ...

    def students_of_guardian(self, parent_id: str) -> Set[str]:
        ...

    def groups_of_member(self, user_id: str) -> Set[str]:
        ...

    def members_of_groups(self, group_ids: Sequence[str]) -> Set[str]:
        ...


class CancelSignal(Protocol):
    """Anything exposing `is_set()`: threading.Event, asyncio.Event, Deadline."""

    def is_set(self) -> bool:
        ...


class Deadline:
    """Cancellation signal that fires once `seconds` have elapsed."""

    def __init__(self, seconds: float, *, clock=time.monotonic) -> None:
        self._clock = clock
        self._expires_at = clock() + float(seconds)

    def is_set(self) -> bool:
        return self._clock() >= self._expires_at

    def remaining(self) -> float:
        return max(0.0, self._expires_at - self._clock())


# ------------------------------ Errors --------------------------------------


class MessagingAuthzError(Exception):
    """Base class for messaging authorization faults."""


class ActorNotFound(MessagingAuthzError, LookupError):
    """Actor or target id does not resolve in the directory. Not retried."""


class ActorNotProvisioned(MessagingAuthzError):
    """Directory record exists but role or tenant is missing/invalid."""


class DataSourceUnavailable(MessagingAuthzError):
    """Transient read failure; callers may retry with backoff."""


class PolicyMismatch(MessagingAuthzError, ValueError):
    """Rule table references an undefined relation or role. Fatal at startup."""


class EvaluationCancelled(MessagingAuthzError):
    """Caller's cancellation signal fired while an evaluation was in flight."""


__all__ = [
    # Protocols
    "IdentityDirectoryProtocol",
    "RelationshipStoreProtocol",
    "CancelSignal",
    "Deadline",
    # Errors
    "MessagingAuthzError",
    "ActorNotFound",
    "ActorNotProvisioned",
    "DataSourceUnavailable",
    "PolicyMismatch",
    "EvaluationCancelled",
]
