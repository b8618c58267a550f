"""
Unit tests for the messaging role hierarchy policy.

Covers the canonical table (directional rows, wildcard for bigadmin), the
union-of-rules lookups used for pushdown and startup validation that turns a
broken table into PolicyMismatch.
"""
from __future__ import annotations

import pytest

from backend.messaging.domain import ALL_ROLES, Relation, Role
from backend.messaging.policy import (
    CANONICAL_RULES,
    MessagingPolicy,
    MessagingRule,
    build_policy,
)
from backend.messaging.ports import PolicyMismatch


def _relations(policy: MessagingPolicy, actor: Role, target: Role) -> set[Relation]:
    return {r.relation for r in policy.rules_for(actor, target)}


def test_canonical_table_has_eight_rows_and_validates():
    policy = MessagingPolicy(CANONICAL_RULES)
    assert len(policy) == 8


def test_superadmin_reaches_only_bigadmin_without_tenant_requirement():
    policy = build_policy(group_channel=False)
    assert _relations(policy, Role.SUPERADMIN, Role.BIGADMIN) == {Relation.NONE_REQUIRED}
    for target in ALL_ROLES - {Role.BIGADMIN}:
        assert policy.rules_for(Role.SUPERADMIN, target) == ()


def test_bigadmin_wildcard_covers_every_role():
    policy = build_policy(group_channel=False)
    assert policy.target_roles_for(Role.BIGADMIN) == frozenset(ALL_ROLES)


def test_rules_are_directional_not_symmetric():
    policy = build_policy(group_channel=False)
    assert _relations(policy, Role.TEACHER, Role.PARENT) == {Relation.VIA_SHARED_CLASS}
    assert _relations(policy, Role.PARENT, Role.TEACHER) == {Relation.VIA_GUARDIANSHIP_THEN_CLASS}
    assert _relations(policy, Role.STUDENT, Role.TEACHER) == {Relation.VIA_SHARED_CLASS}
    assert policy.rules_for(Role.TEACHER, Role.STUDENT) == ()
    assert _relations(policy, Role.BIGADMIN, Role.SUPERADMIN) == {Relation.ALWAYS_SAME_TENANT}


def test_teacher_target_roles_union_same_tenant_and_shared_class_rows():
    policy = build_policy(group_channel=False)
    assert policy.target_roles_for(Role.TEACHER) == frozenset(
        {Role.BIGADMIN, Role.ADMIN, Role.TEACHER, Role.PARENT}
    )
    assert policy.target_roles_for(Role.STUDENT) == frozenset({Role.TEACHER})


def test_group_channel_adds_shared_group_rule_for_every_role():
    policy = build_policy(group_channel=True)
    assert policy.has_relation(Relation.VIA_SHARED_GROUP)
    for role in ALL_ROLES:
        assert Relation.VIA_SHARED_GROUP in _relations(policy, role, Role.STUDENT)
    # Pushdown ignores the group rule so tenant scans stay role-filtered.
    assert policy.target_roles_for(Role.STUDENT, exclude=(Relation.VIA_SHARED_GROUP,)) == frozenset({Role.TEACHER})


def test_group_channel_can_be_disabled():
    policy = build_policy(group_channel=False)
    assert not policy.has_relation(Relation.VIA_SHARED_GROUP)


def test_none_required_for_non_superadmin_is_rejected_at_construction():
    bad = MessagingRule(actor_role=Role.ADMIN, target_roles=frozenset({Role.BIGADMIN}), relation=Relation.NONE_REQUIRED)
    with pytest.raises(PolicyMismatch):
        build_policy(extra_rules=[bad])


def test_unknown_relation_kind_is_rejected_at_construction():
    bad = MessagingRule(actor_role=Role.ADMIN, target_roles=frozenset({Role.TEACHER}), relation="via_magic")  # type: ignore[arg-type]
    with pytest.raises(PolicyMismatch) as exc:
        MessagingPolicy([*CANONICAL_RULES, bad])
    assert "unknown_relation" in str(exc.value)


@pytest.mark.parametrize(
    "rule",
    [
        MessagingRule(actor_role="janitor", target_roles=frozenset({Role.TEACHER}), relation=Relation.ALWAYS_SAME_TENANT),  # type: ignore[arg-type]
        MessagingRule(actor_role=Role.ADMIN, target_roles=frozenset(), relation=Relation.ALWAYS_SAME_TENANT),
        MessagingRule(actor_role=Role.ADMIN, target_roles=frozenset({"janitor"}), relation=Relation.ALWAYS_SAME_TENANT),  # type: ignore[arg-type]
        ("admin", "teacher", "always_same_tenant"),
    ],
)
def test_malformed_rules_raise_policy_mismatch(rule):
    with pytest.raises(PolicyMismatch):
        MessagingPolicy([rule])  # type: ignore[list-item]


def test_policy_mismatch_is_a_value_error_for_startup_handlers():
    assert issubclass(PolicyMismatch, ValueError)
