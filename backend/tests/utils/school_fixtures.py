"""
School scenario builders for messaging tests.

Tenant "school-x":
    bigadmin B1, admin A1, teachers T1 (teaches C1) and T2 (teaches C2),
    student S1 (in C1), student S2 (in C2), parent P1 (guardian of S1).
Tenant "school-y":
    bigadmin B2, teacher TY, parent PY (guardian of S1, a cross-tenant edge).
No tenant:
    superadmin SA.
"""
from __future__ import annotations

from backend.messaging.engine import MessagingAuthorizationEngine
from backend.messaging.policy import build_policy
from backend.messaging.repo_memory import InMemoryMessagingRepo


def build_school_repo() -> InMemoryMessagingRepo:
    repo = InMemoryMessagingRepo()
    repo.add_actor("SA", "superadmin", None, first_name="Sam", last_name="Root")
    repo.add_actor("B1", "bigadmin", "school-x", first_name="Berta", last_name="Boss")
    repo.add_actor("A1", "admin", "school-x", first_name="Anna", last_name="Amt")
    repo.add_actor("T1", "teacher", "school-x", first_name="Tim", last_name="Lehrer", avatar_url="https://cdn.example/t1.png")
    repo.add_actor("T2", "teacher", "school-x", first_name="Tina", last_name="Lehrer")
    repo.add_actor("S1", "student", "school-x", first_name="Sven", last_name="Schüler")
    repo.add_actor("S2", "student", "school-x", first_name="Sara", last_name="Schüler")
    repo.add_actor("P1", "parent", "school-x", first_name="Paula", last_name="Eltern")
    repo.add_actor("B2", "bigadmin", "school-y", first_name="Bernd", last_name="Chef")
    repo.add_actor("TY", "teacher", "school-y", first_name="Tom", last_name="Ypsilon")
    repo.add_actor("PY", "parent", "school-y", first_name="Peter", last_name="Ypsilon")

    repo.add_teaching("C1", "T1")
    repo.add_teaching("C2", "T2")
    repo.enroll("C1", "S1")
    repo.enroll("C2", "S2")
    repo.add_guardian("P1", "S1")
    # Misconfigured edge across tenants; must never grant visibility.
    repo.add_guardian("PY", "S1")
    repo.add_teaching("C1", "TY")
    return repo


def build_engine(repo: InMemoryMessagingRepo | None = None, *, group_channel: bool = True) -> MessagingAuthorizationEngine:
    repo = repo or build_school_repo()
    return MessagingAuthorizationEngine(repo, repo, build_policy(group_channel=group_channel))
