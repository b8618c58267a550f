"""
Messaging domain types: roles, actors, relation kinds and decisions.

Why:
- Roles are a closed set. Reading an unknown role string from storage must
  never produce a "role"; it yields an actor that is not provisioned.
- Tenants stay opaque strings; the engine only compares them for equality.
- Decisions are plain values. "Not allowed" is a result, not an exception.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

LOG = logging.getLogger("schulhof.messaging")


class Role(str, Enum):
    SUPERADMIN = "superadmin"
    BIGADMIN = "bigadmin"
    ADMIN = "admin"
    TEACHER = "teacher"
    PARENT = "parent"
    STUDENT = "student"

    @classmethod
    def parse(cls, value: object) -> Optional["Role"]:
        """Map a stored role string to a Role; unknown or empty values give None."""
        if isinstance(value, Role):
            return value
        if not isinstance(value, str):
            return None
        raw = value.strip().lower()
        if not raw:
            return None
        try:
            return cls(raw)
        except ValueError:
            LOG.warning("Unknown role value ignored: %r", raw[:32])
            return None


# Immutable to prevent accidental mutation.
ALL_ROLES = frozenset(Role)


class Relation(str, Enum):
    """Relationship a rule requires between actor and target."""

    ALWAYS_SAME_TENANT = "always_same_tenant"
    NONE_REQUIRED = "none_required"
    VIA_SHARED_CLASS = "via_shared_class"
    VIA_GUARDIANSHIP = "via_guardianship"
    VIA_GUARDIANSHIP_THEN_CLASS = "via_guardianship_then_class"
    VIA_SHARED_GROUP = "via_shared_group"


class Reason(str, Enum):
    ALLOWED = "allowed"
    SELF = "self"
    CROSS_TENANT = "cross_tenant"
    NO_RULE_MATCHED = "no_rule_matched"


@dataclass(frozen=True, slots=True)
class Actor:
    """Directory view of a user.

    Parameters:
        id: Stable user id (auth subject).
        role: Role or None when provisioning is incomplete.
        tenant_id: School id; None only for superadmins.
        first_name, last_name, avatar_url: Display attributes for contact lists.
    """

    id: str
    role: Optional[Role]
    tenant_id: Optional[str]
    first_name: str = ""
    last_name: str = ""
    avatar_url: Optional[str] = None

    @property
    def is_superadmin(self) -> bool:
        return self.role is Role.SUPERADMIN

    @property
    def is_provisioned(self) -> bool:
        if self.role is None:
            return False
        return self.is_superadmin or bool(self.tenant_id)

    @property
    def display_name(self) -> str:
        first = (self.first_name or "").strip()
        if self.is_superadmin:
            return f"Admin {first}".strip()
        last = (self.last_name or "").strip()
        return " ".join(p for p in (first, last) if p)

    def sort_key(self) -> tuple[str, str, str]:
        return (self.first_name or "", self.last_name or "", self.id)


@dataclass(frozen=True, slots=True)
class AuthorizationDecision:
    allowed: bool
    reason: Reason
    relation: Optional[Relation] = None

    def to_dict(self) -> dict:
        out: dict = {"allowed": self.allowed, "reason": self.reason.value}
        if self.relation is not None:
            out["relation"] = self.relation.value
        return out


@dataclass(frozen=True, slots=True)
class MessageableContact:
    """Contact projection consumed by messaging clients.

    The key order of `to_dict()` is part of the API contract; `display_name`
    is for operator tooling and not part of it.
    """

    id: str
    first_name: str
    last_name: str
    role: Role
    avatar_url: Optional[str]
    display_name: str = ""

    @classmethod
    def from_actor(cls, actor: Actor) -> "MessageableContact":
        if actor.role is None:
            raise ValueError("actor_without_role")
        return cls(
            id=actor.id,
            first_name=actor.first_name or "",
            last_name=actor.last_name or "",
            role=actor.role,
            avatar_url=actor.avatar_url,
            display_name=actor.display_name,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "role": self.role.value,
            "avatarUrl": self.avatar_url,
        }


DENY_SELF = AuthorizationDecision(allowed=False, reason=Reason.SELF)
DENY_CROSS_TENANT = AuthorizationDecision(allowed=False, reason=Reason.CROSS_TENANT)
DENY_NO_RULE = AuthorizationDecision(allowed=False, reason=Reason.NO_RULE_MATCHED)


def allow(relation: Relation) -> AuthorizationDecision:
    return AuthorizationDecision(allowed=True, reason=Reason.ALLOWED, relation=relation)


__all__ = [
    "Role",
    "ALL_ROLES",
    "Relation",
    "Reason",
    "Actor",
    "AuthorizationDecision",
    "MessageableContact",
    "DENY_SELF",
    "DENY_CROSS_TENANT",
    "DENY_NO_RULE",
    "allow",
]
