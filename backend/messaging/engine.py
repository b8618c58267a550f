"""
Messaging authorization engine.

Why:
    One place decides "who may message whom" for every caller (web routes,
    messaging service, CLI). The decision combines tenant isolation, the role
    hierarchy policy and the relationship graph.

Behavior:
    - `can_message`: SELF, then tenant isolation (superadmins exempt), then the
      union of matching policy rules. Denials are decisions, never exceptions.
    - `messageable_set`: scans a directory listing that is pre-filtered by
      tenant and reachable roles (plus group peers), evaluates each candidate
      and returns contacts sorted by (first name, last name, id).
    - All directory and edge reads run through an `EvaluationCapability` so
      they never re-enter the access-control layer that called the engine.

Errors:
    ActorNotFound, ActorNotProvisioned, DataSourceUnavailable and
    EvaluationCancelled propagate to the caller; the engine never retries.
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, List, Mapping, Optional

from .domain import (
    DENY_CROSS_TENANT,
    DENY_NO_RULE,
    DENY_SELF,
    Actor,
    AuthorizationDecision,
    MessageableContact,
    Relation,
    Role,
    allow,
)
from .graph import RelationshipGraph
from .guard import EvaluationCapability, bind_issuer
from .policy import MessagingPolicy, build_policy
from .ports import (
    ActorNotFound,
    ActorNotProvisioned,
    CancelSignal,
    IdentityDirectoryProtocol,
    PolicyMismatch,
    RelationshipStoreProtocol,
)

LOG = logging.getLogger("schulhof.messaging")

# Only this module can issue evaluation capabilities.
_ISSUER = object()
bind_issuer(_ISSUER)

RelationCheck = Callable[[RelationshipGraph, Actor, Actor], bool]


def _short(actor_id: str) -> str:
    return (actor_id or "")[-6:]


def _same_tenant(actor: Actor, target: Actor) -> bool:
    return actor.tenant_id is not None and actor.tenant_id == target.tenant_id


# ----------------------------- Relation checks ------------------------------


def _check_none_required(graph: RelationshipGraph, actor: Actor, target: Actor) -> bool:
    return True


def _check_same_tenant(graph: RelationshipGraph, actor: Actor, target: Actor) -> bool:
    return _same_tenant(actor, target)


def _check_shared_class(graph: RelationshipGraph, actor: Actor, target: Actor) -> bool:
    if actor.role is Role.STUDENT and target.role is Role.TEACHER:
        return graph.shares_class_as_teacher_student(target.id, actor.id)
    if actor.role is Role.TEACHER and target.role is Role.STUDENT:
        return graph.shares_class_as_teacher_student(actor.id, target.id)
    if actor.role is Role.TEACHER and target.role is Role.PARENT:
        # Teacher teaches a class the parent's child is enrolled in.
        return graph.guardian_shares_teacher_via_student(target.id, actor.id)
    return False


def _check_guardianship(graph: RelationshipGraph, actor: Actor, target: Actor) -> bool:
    if actor.role is Role.PARENT and target.role is Role.STUDENT:
        return graph.is_guardian_of(actor.id, target.id)
    if actor.role is Role.STUDENT and target.role is Role.PARENT:
        return graph.is_guardian_of(target.id, actor.id)
    return False


def _check_guardianship_then_class(graph: RelationshipGraph, actor: Actor, target: Actor) -> bool:
    if actor.role is Role.PARENT and target.role is Role.TEACHER:
        return graph.guardian_shares_teacher_via_student(actor.id, target.id)
    if actor.role is Role.TEACHER and target.role is Role.PARENT:
        return graph.guardian_shares_teacher_via_student(target.id, actor.id)
    return False


def _check_shared_group(graph: RelationshipGraph, actor: Actor, target: Actor) -> bool:
    return graph.shares_group(actor.id, target.id)


RELATION_CHECKS: Mapping[Relation, RelationCheck] = {
    Relation.NONE_REQUIRED: _check_none_required,
    Relation.ALWAYS_SAME_TENANT: _check_same_tenant,
    Relation.VIA_SHARED_CLASS: _check_shared_class,
    Relation.VIA_GUARDIANSHIP: _check_guardianship,
    Relation.VIA_GUARDIANSHIP_THEN_CLASS: _check_guardianship_then_class,
    Relation.VIA_SHARED_GROUP: _check_shared_group,
}


# ------------------------------- Engine -------------------------------------


class MessagingAuthorizationEngine:
    """Evaluate messaging permissions against a directory and an edge store.

    Parameters:
        directory: Identity directory adapter (read-only).
        store: Relationship edge store adapter (read-only).
        policy: Validated rule table; defaults to `build_policy()`.
    """

    def __init__(
        self,
        directory: IdentityDirectoryProtocol,
        store: RelationshipStoreProtocol,
        policy: Optional[MessagingPolicy] = None,
    ) -> None:
        self._directory = directory
        self._store = store
        self._policy = policy if policy is not None else build_policy()
        missing = {r.relation for r in self._policy.rules} - set(RELATION_CHECKS)
        if missing:
            raise PolicyMismatch("relation_without_check: " + ",".join(sorted(m.value for m in missing)))

    @property
    def policy(self) -> MessagingPolicy:
        return self._policy

    # --- public operations --------------------------------------------------
    def can_message(self, actor: Actor, target: Actor, *, cancel: Optional[CancelSignal] = None) -> AuthorizationDecision:
        """Decide whether `actor` may message `target` (both already resolved)."""
        cap = self._capability(cancel)
        try:
            return self._decide(actor, target, RelationshipGraph(cap))
        finally:
            cap.close()

    def can_message_ids(
        self, actor_id: str, target_id: str, *, cancel: Optional[CancelSignal] = None
    ) -> AuthorizationDecision:
        """Resolve both ids in the directory and decide.

        Raises:
            ActorNotFound: either id is unknown.
            ActorNotProvisioned: the actor's role/tenant is incomplete.
        """
        cap = self._capability(cancel)
        try:
            actor = self._resolve(cap, actor_id)
            if target_id == actor_id:
                return DENY_SELF
            target = self._resolve(cap, target_id)
            return self._decide(actor, target, RelationshipGraph(cap))
        finally:
            cap.close()

    def messageable_set(self, actor_id: str, *, cancel: Optional[CancelSignal] = None) -> List[MessageableContact]:
        """Contacts the actor may message, sorted by (first name, last name, id).

        Raises:
            ActorNotFound: unknown actor id.
            ActorNotProvisioned: actor has no valid role/tenant; distinguishes a
                broken identity from an actor without peers.
        """
        cap = self._capability(cancel)
        try:
            return self._messageable_set(cap, actor_id)
        finally:
            cap.close()

    # --- internals ----------------------------------------------------------
    def _capability(self, cancel: Optional[CancelSignal]) -> EvaluationCapability:
        return EvaluationCapability(_ISSUER, self._directory, self._store, cancel)

    def _messageable_set(self, cap: EvaluationCapability, actor_id: str) -> List[MessageableContact]:
        actor = self._resolve(cap, actor_id)
        if not actor.is_provisioned:
            raise ActorNotProvisioned("actor_not_provisioned")
        graph = RelationshipGraph(cap)

        candidates: Dict[str, Actor] = {}
        for cand in self._candidates(cap, graph, actor):
            if cand.id != actor.id:
                candidates.setdefault(cand.id, cand)

        allowed: List[Actor] = []
        for cand_id in sorted(candidates):
            cap.check_cancelled()
            cand = candidates[cand_id]
            if cand.role is None:
                continue
            if self._decide(actor, cand, graph).allowed:
                allowed.append(cand)
        allowed.sort(key=Actor.sort_key)
        LOG.debug(
            "messageable_set actor=%s candidates=%s allowed=%s",
            _short(actor.id),
            len(candidates),
            len(allowed),
        )
        return [MessageableContact.from_actor(a) for a in allowed]

    def _resolve(self, cap: EvaluationCapability, actor_id: str) -> Actor:
        if not actor_id:
            raise ActorNotFound("actor_not_found")
        found = cap.read("get_actor", actor_id)
        if found is None:
            raise ActorNotFound("actor_not_found")
        return found

    def _candidates(self, cap: EvaluationCapability, graph: RelationshipGraph, actor: Actor) -> List[Actor]:
        if actor.role is None:
            raise ActorNotProvisioned("actor_not_provisioned")
        roles = self._policy.target_roles_for(actor.role, exclude=(Relation.VIA_SHARED_GROUP,))
        tenant = None if actor.is_superadmin else actor.tenant_id
        out: List[Actor] = []
        if roles:
            ordered = sorted(roles, key=lambda r: r.value)
            out.extend(cap.read("list_actors", tenant_id=tenant, roles=ordered) or [])
        if any(r.relation is Relation.VIA_SHARED_GROUP for r in self._policy.rules_for_actor(actor.role)):
            known = {a.id for a in out}
            peers = sorted(graph.group_peers(actor.id) - known)
            if peers:
                out.extend(cap.read("get_actors", peers) or [])
        return out

    def _decide(self, actor: Actor, target: Actor, graph: RelationshipGraph) -> AuthorizationDecision:
        if actor.id == target.id:
            return DENY_SELF
        if not actor.is_provisioned or actor.role is None:
            raise ActorNotProvisioned("actor_not_provisioned")
        rules = self._policy.rules_for(actor.role, target.role) if target.role is not None else ()
        if not actor.is_superadmin and not _same_tenant(actor, target):
            if not any(r.relation is Relation.NONE_REQUIRED for r in rules):
                LOG.debug("deny cross_tenant actor=%s target=%s", _short(actor.id), _short(target.id))
                return DENY_CROSS_TENANT
        for rule in rules:
            if RELATION_CHECKS[rule.relation](graph, actor, target):
                LOG.debug(
                    "allow actor=%s target=%s relation=%s",
                    _short(actor.id),
                    _short(target.id),
                    rule.relation.value,
                )
                return allow(rule.relation)
        return DENY_NO_RULE


__all__ = ["MessagingAuthorizationEngine", "RELATION_CHECKS"]
