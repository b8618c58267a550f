"""
Relationship graph provider over the external edge store.

Every store read runs through the engine's evaluation capability, so it
bypasses the access-control layer it would otherwise trigger. A provider
instance lives for one engine evaluation only; results are memoised for that
lifetime, which is safe because reads are idempotent and the engine assumes
snapshot consistency from the store.
"""

from __future__ import annotations

from typing import Dict, Tuple

from .guard import EvaluationCapability


class RelationshipGraph:
    def __init__(self, capability: EvaluationCapability) -> None:
        self._cap = capability
        self._memo: Dict[Tuple[str, str], frozenset[str]] = {}

    def _read(self, op: str, key: str) -> frozenset[str]:
        memo_key = (op, key)
        cached = self._memo.get(memo_key)
        if cached is not None:
            return cached
        result = self._cap.read(op, key)
        value = frozenset(result or ())
        self._memo[memo_key] = value
        return value

    # --- edge reads ---------------------------------------------------------
    def classes_taught_by(self, teacher_id: str) -> frozenset[str]:
        return self._read("classes_taught_by", teacher_id)

    def classes_of_student(self, student_id: str) -> frozenset[str]:
        return self._read("classes_of_student", student_id)

    def students_of_guardian(self, parent_id: str) -> frozenset[str]:
        return self._read("students_of_guardian", parent_id)

    def groups_of_member(self, user_id: str) -> frozenset[str]:
        return self._read("groups_of_member", user_id)

    # --- predicates ---------------------------------------------------------
    def shares_class_as_teacher_student(self, teacher_id: str, student_id: str) -> bool:
        """True if `teacher_id` teaches a class in which `student_id` is enrolled."""
        taught = self.classes_taught_by(teacher_id)
        if not taught:
            return False
        return not taught.isdisjoint(self.classes_of_student(student_id))

    def is_guardian_of(self, parent_id: str, student_id: str) -> bool:
        return student_id in self.students_of_guardian(parent_id)

    def guardian_shares_teacher_via_student(self, parent_id: str, teacher_id: str) -> bool:
        """Guardian -> child -> class taught by `teacher_id`.

        Evaluated edge by edge; tenant equality alone never satisfies it.
        """
        children = self.students_of_guardian(parent_id)
        if not children:
            return False
        if not self.classes_taught_by(teacher_id):
            return False
        for student_id in sorted(children):
            self._cap.check_cancelled()
            if self.shares_class_as_teacher_student(teacher_id, student_id):
                return True
        return False

    def shares_group(self, a_id: str, b_id: str) -> bool:
        groups = self.groups_of_member(a_id)
        if not groups:
            return False
        return not groups.isdisjoint(self.groups_of_member(b_id))

    def group_peers(self, actor_id: str) -> frozenset[str]:
        """Ids of everyone sharing at least one message group with `actor_id`."""
        groups = self.groups_of_member(actor_id)
        if not groups:
            return frozenset()
        members = self._cap.read("members_of_groups", sorted(groups))
        return frozenset(m for m in (members or ()) if m != actor_id)


__all__ = ["RelationshipGraph"]
