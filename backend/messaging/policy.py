"""
Role hierarchy policy for messaging.

Centralises the rule table so that the engine, the CLI and tests reference a
single source of truth. Rules are a union of permissions: a decision is
allowed when any matching rule's relation holds. Rules never shadow each
other, so adding a row cannot silently disable an existing one.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Mapping, Sequence

from .domain import ALL_ROLES, LOG, Relation, Role
from .ports import PolicyMismatch


@dataclass(frozen=True, slots=True)
class MessagingRule:
    """Immutable rule: `actor_role` may message `target_roles` when `relation` holds."""

    actor_role: Role
    target_roles: frozenset[Role]
    relation: Relation

    def matches(self, actor_role: Role, target_role: Role) -> bool:
        return actor_role is self.actor_role and target_role in self.target_roles


def _rule(actor: str, targets: Iterable[str] | str, relation: Relation) -> MessagingRule:
    if targets == "*":
        target_roles = frozenset(ALL_ROLES)
    else:
        target_roles = frozenset(Role(t) for t in targets)
    return MessagingRule(actor_role=Role(actor), target_roles=target_roles, relation=relation)


CANONICAL_RULES: tuple[MessagingRule, ...] = (
    _rule("superadmin", ["bigadmin"], Relation.NONE_REQUIRED),
    _rule("bigadmin", "*", Relation.ALWAYS_SAME_TENANT),
    _rule("admin", ["bigadmin", "admin", "teacher", "parent"], Relation.ALWAYS_SAME_TENANT),
    _rule("teacher", ["bigadmin", "admin", "teacher"], Relation.ALWAYS_SAME_TENANT),
    _rule("teacher", ["parent"], Relation.VIA_SHARED_CLASS),
    _rule("parent", ["teacher"], Relation.VIA_GUARDIANSHIP_THEN_CLASS),
    _rule("parent", ["bigadmin", "admin"], Relation.ALWAYS_SAME_TENANT),
    _rule("student", ["teacher"], Relation.VIA_SHARED_CLASS),
)

# Members of the same message group may talk regardless of role.
GROUP_CHANNEL_RULES: tuple[MessagingRule, ...] = tuple(
    MessagingRule(actor_role=role, target_roles=frozenset(ALL_ROLES), relation=Relation.VIA_SHARED_GROUP)
    for role in sorted(ALL_ROLES, key=lambda r: r.value)
)


class MessagingPolicy:
    """Validated, indexed view over a rule table.

    Construction validates every rule and raises `PolicyMismatch` on the first
    violation, so a broken table fails at startup and never at decision time.
    """

    def __init__(self, rules: Sequence[MessagingRule]) -> None:
        self._rules = tuple(rules)
        for idx, rule in enumerate(self._rules):
            _validate_rule(idx, rule)
        index: dict[Role, list[MessagingRule]] = {role: [] for role in ALL_ROLES}
        for rule in self._rules:
            index[rule.actor_role].append(rule)
        self._by_actor: Mapping[Role, tuple[MessagingRule, ...]] = {k: tuple(v) for k, v in index.items()}

    @property
    def rules(self) -> tuple[MessagingRule, ...]:
        return self._rules

    def rules_for_actor(self, actor_role: Role) -> tuple[MessagingRule, ...]:
        return self._by_actor.get(actor_role, ())

    def rules_for(self, actor_role: Role, target_role: Role) -> tuple[MessagingRule, ...]:
        return tuple(r for r in self._by_actor.get(actor_role, ()) if target_role in r.target_roles)

    def target_roles_for(self, actor_role: Role, *, exclude: Iterable[Relation] = ()) -> frozenset[Role]:
        """Roles an actor could reach at all; used to pre-filter directory scans."""
        skip = set(exclude)
        roles: set[Role] = set()
        for rule in self._by_actor.get(actor_role, ()):
            if rule.relation not in skip:
                roles |= rule.target_roles
        return frozenset(roles)

    def has_relation(self, relation: Relation) -> bool:
        return any(r.relation is relation for r in self._rules)

    def __len__(self) -> int:
        return len(self._rules)


def _validate_rule(idx: int, rule: object) -> None:
    if not isinstance(rule, MessagingRule):
        raise PolicyMismatch(f"rule_{idx}_invalid_type")
    if not isinstance(rule.relation, Relation):
        raise PolicyMismatch(f"rule_{idx}_unknown_relation")
    if not isinstance(rule.actor_role, Role):
        raise PolicyMismatch(f"rule_{idx}_unknown_actor_role")
    if not rule.target_roles or not all(isinstance(t, Role) for t in rule.target_roles):
        raise PolicyMismatch(f"rule_{idx}_unknown_target_role")
    if rule.relation is Relation.NONE_REQUIRED and rule.actor_role is not Role.SUPERADMIN:
        raise PolicyMismatch(f"rule_{idx}_cross_tenant_requires_superadmin")


def build_policy(*, group_channel: bool = True, extra_rules: Sequence[MessagingRule] = ()) -> MessagingPolicy:
    """Build the default policy: canonical table, optional group channel, extras."""
    rules: list[MessagingRule] = list(CANONICAL_RULES)
    if group_channel:
        rules.extend(GROUP_CHANNEL_RULES)
    rules.extend(extra_rules)
    policy = MessagingPolicy(rules)
    LOG.info("Messaging policy loaded: rules=%s group_channel=%s", len(policy), group_channel)
    return policy


__all__ = [
    "MessagingRule",
    "CANONICAL_RULES",
    "GROUP_CHANNEL_RULES",
    "MessagingPolicy",
    "build_policy",
]
