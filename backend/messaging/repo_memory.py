"""
In-memory directory and relationship store.

Why:
    Tests and CLI dry runs need the engine without a database. The store can
    also carry an access-control hook that mimics row level security: outside
    an elevated evaluation every row is filtered through the hook. Hooks may
    call back into the store (e.g. "is the viewer an admin of this tenant?");
    that only terminates when engine reads bypass the hook, which is exactly
    what the evaluation guard provides.

Seed format (JSON or dict), all keys optional:
    {
      "actors": [{"id", "role", "tenant_id", "first_name", "last_name", "avatar_url"}],
      "classes": [{"id", "teachers": [...], "students": [...]}],
      "guardians": [{"parent_id", "student_id"}],
      "groups": [{"id", "members": [...]}]
    }
"""
from __future__ import annotations

from collections import Counter, defaultdict
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Set

from .domain import Actor, Role
from .guard import is_elevated

# (table, row key) -> visible?
AccessHook = Callable[[str, str], bool]


class InMemoryMessagingRepo:
    def __init__(self, access_hook: Optional[AccessHook] = None) -> None:
        self._actors: Dict[str, Actor] = {}
        self._taught: Dict[str, Set[str]] = defaultdict(set)
        self._enrolled: Dict[str, Set[str]] = defaultdict(set)
        self._children: Dict[str, Set[str]] = defaultdict(set)
        self._groups: Dict[str, Set[str]] = defaultdict(set)
        self._access_hook = access_hook
        self.reads: Counter = Counter()

    # --- seeding --------------------------------------------------------------
    def add_actor(
        self,
        actor_id: str,
        role: Optional[str | Role],
        tenant_id: Optional[str],
        *,
        first_name: str = "",
        last_name: str = "",
        avatar_url: Optional[str] = None,
    ) -> Actor:
        actor = Actor(
            id=actor_id,
            role=Role.parse(role) if role is not None else None,
            tenant_id=tenant_id,
            first_name=first_name,
            last_name=last_name,
            avatar_url=avatar_url,
        )
        self._actors[actor_id] = actor
        return actor

    def add_teaching(self, class_id: str, teacher_id: str) -> None:
        self._taught[teacher_id].add(class_id)

    def enroll(self, class_id: str, student_id: str) -> None:
        self._enrolled[student_id].add(class_id)

    def add_guardian(self, parent_id: str, student_id: str) -> None:
        self._children[parent_id].add(student_id)

    def add_group_member(self, group_id: str, user_id: str) -> None:
        self._groups[user_id].add(group_id)

    def set_access_hook(self, hook: Optional[AccessHook]) -> None:
        self._access_hook = hook

    @classmethod
    def from_seed(cls, seed: Mapping) -> "InMemoryMessagingRepo":
        repo = cls()
        for a in seed.get("actors") or []:
            repo.add_actor(
                str(a["id"]),
                a.get("role"),
                a.get("tenant_id"),
                first_name=a.get("first_name") or "",
                last_name=a.get("last_name") or "",
                avatar_url=a.get("avatar_url"),
            )
        for c in seed.get("classes") or []:
            for t in c.get("teachers") or []:
                repo.add_teaching(str(c["id"]), str(t))
            for s in c.get("students") or []:
                repo.enroll(str(c["id"]), str(s))
        for g in seed.get("guardians") or []:
            repo.add_guardian(str(g["parent_id"]), str(g["student_id"]))
        for grp in seed.get("groups") or []:
            for m in grp.get("members") or []:
                repo.add_group_member(str(grp["id"]), str(m))
        return repo

    # --- access control -------------------------------------------------------
    def _visible(self, table: str, key: str) -> bool:
        if is_elevated() or self._access_hook is None:
            return True
        return bool(self._access_hook(table, key))

    def _edge_ids(self, table: str, owner: str, source: Mapping[str, Set[str]]) -> Set[str]:
        self.reads[table] += 1
        if not self._visible(table, owner):
            return set()
        return set(source.get(owner, ()))

    # --- IdentityDirectoryProtocol -------------------------------------------
    def get_actor(self, actor_id: str) -> Optional[Actor]:
        self.reads["profiles"] += 1
        actor = self._actors.get(actor_id)
        if actor is None or not self._visible("profiles", actor_id):
            return None
        return actor

    def get_actors(self, actor_ids: Iterable[str]) -> List[Actor]:
        self.reads["profiles"] += 1
        return [
            self._actors[a]
            for a in sorted(set(actor_ids))
            if a in self._actors and self._visible("profiles", a)
        ]

    def list_actors(self, *, tenant_id: Optional[str], roles: Iterable[Role]) -> List[Actor]:
        self.reads["profiles_scan"] += 1
        wanted = set(roles)
        out = []
        for actor_id in sorted(self._actors):
            actor = self._actors[actor_id]
            if actor.role not in wanted:
                continue
            if tenant_id is not None and actor.tenant_id != tenant_id:
                continue
            if self._visible("profiles", actor_id):
                out.append(actor)
        return out

    # --- RelationshipStoreProtocol -------------------------------------------
    def classes_taught_by(self, teacher_id: str) -> Set[str]:
        return self._edge_ids("subjects", teacher_id, self._taught)

    def classes_of_student(self, student_id: str) -> Set[str]:
        return self._edge_ids("class_students", student_id, self._enrolled)

    def students_of_guardian(self, parent_id: str) -> Set[str]:
        return self._edge_ids("parent_student", parent_id, self._children)

    def groups_of_member(self, user_id: str) -> Set[str]:
        return self._edge_ids("message_group_members", user_id, self._groups)

    def members_of_groups(self, group_ids: Sequence[str]) -> Set[str]:
        self.reads["message_group_members"] += 1
        wanted = set(group_ids)
        return {
            user_id
            for user_id, groups in self._groups.items()
            if not groups.isdisjoint(wanted) and self._visible("message_group_members", user_id)
        }


__all__ = ["InMemoryMessagingRepo", "AccessHook"]
