"""
Recursion-safe evaluation guard.

Why:
    Access-control hooks on directory/edge data call helper predicates that
    read the same data again. Without the guard, evaluating a messaging
    permission from inside such a hook never terminates. These tests build an
    in-memory store whose row filter re-enters itself and verify that:
      - the hazard is real for ordinary reads,
      - engine reads bypass the filter entirely,
      - elevation is scoped to one read and never leaks (errors, threads),
      - application code cannot mint a capability, a capability only
        performs port reads and is inert once its evaluation returns.
"""
from __future__ import annotations

import threading

import pytest

from backend.messaging import engine as engine_module
from backend.messaging import guard
from backend.messaging.domain import Reason
from backend.messaging.graph import RelationshipGraph
from backend.messaging.guard import EvaluationCapability, is_elevated
from backend.messaging.ports import DataSourceUnavailable
from backend.tests.utils.school_fixtures import build_engine, build_school_repo

VIEWER = "A1"


class _ReentrantRowFilter:
    """Row filter that asks 'is the viewer a school admin?' by reading profiles again."""

    def __init__(self, repo, limit: int = 25) -> None:
        self.repo = repo
        self.calls = 0
        self.limit = limit

    def __call__(self, table: str, key: str) -> bool:
        self.calls += 1
        if self.calls > self.limit:
            raise RuntimeError("rls_recursion_detected")
        viewer = self.repo.get_actor(VIEWER)
        return viewer is not None and viewer.role is not None


def test_reentrant_row_filter_recurses_for_plain_reads():
    repo = build_school_repo()
    hook = _ReentrantRowFilter(repo)
    repo.set_access_hook(hook)
    with pytest.raises(RuntimeError, match="rls_recursion_detected"):
        repo.get_actor("T1")


def test_engine_reads_bypass_the_row_filter():
    repo = build_school_repo()
    hook = _ReentrantRowFilter(repo)
    repo.set_access_hook(hook)
    engine = build_engine(repo)

    assert engine.can_message_ids("S1", "T1").allowed is True
    assert [c.id for c in engine.messageable_set("P1")] == ["A1", "B1", "T1"]
    assert hook.calls == 0
    assert is_elevated() is False


def test_elevation_is_reset_after_each_read_even_on_error():
    repo = build_school_repo()
    seen: list[bool] = []

    def get_actor(actor_id):
        seen.append(is_elevated())
        raise DataSourceUnavailable("data_source_unavailable:get_actor")

    repo.get_actor = get_actor  # type: ignore[method-assign]
    engine = build_engine(repo)
    with pytest.raises(DataSourceUnavailable):
        engine.can_message_ids("S1", "T1")
    assert seen == [True]
    assert is_elevated() is False


def test_elevation_does_not_leak_into_other_threads():
    repo = build_school_repo()
    observed: dict[str, bool] = {}
    original = repo.classes_taught_by

    def classes_taught_by(teacher_id):
        t = threading.Thread(target=lambda: observed.__setitem__("thread", is_elevated()))
        t.start()
        t.join()
        observed["reader"] = is_elevated()
        return original(teacher_id)

    repo.classes_taught_by = classes_taught_by  # type: ignore[method-assign]
    assert build_engine(repo).can_message_ids("S1", "T1").allowed is True
    assert observed == {"thread": False, "reader": True}


def test_capabilities_cannot_be_minted_outside_the_engine():
    repo = build_school_repo()
    repo.set_access_hook(lambda table, key: False)
    assert repo.get_actor("PY") is None

    with pytest.raises(TypeError):
        EvaluationCapability(object(), repo, repo)
    with pytest.raises(RuntimeError, match="already_bound"):
        guard.bind_issuer(object())
    assert not hasattr(guard, "issue_capability")
    assert repo.get_actor("PY") is None


def test_engine_capability_is_limited_to_port_reads_and_closed_afterwards(monkeypatch: pytest.MonkeyPatch):
    repo = build_school_repo()
    repo.set_access_hook(lambda table, key: False)
    captured: list = []
    refused: list[str] = []

    class _SpyGraph(RelationshipGraph):
        def __init__(self, capability):
            captured.append(capability)
            try:
                capability.read("set_access_hook", None)
            except PermissionError as exc:
                refused.append(str(exc))
            super().__init__(capability)

    monkeypatch.setattr(engine_module, "RelationshipGraph", _SpyGraph)
    engine = build_engine(repo)
    assert engine.can_message_ids("T1", "PY").reason is Reason.CROSS_TENANT

    assert refused == ["read_not_allowed:set_access_hook"]
    with pytest.raises(PermissionError, match="evaluation_capability_closed"):
        captured[0].read("get_actor", "PY")
    assert is_elevated() is False


def test_row_filter_still_applies_to_application_reads_after_evaluation():
    repo = build_school_repo()
    engine = build_engine(repo)
    engine.messageable_set("T1")
    repo.set_access_hook(lambda table, key: key != "T2")
    assert repo.get_actor("T2") is None
    assert repo.get_actor("T1") is not None
