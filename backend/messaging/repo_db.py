"""
Postgres-backed identity directory and relationship store for messaging.

Security:
- Request handlers use the RLS-limited application role. The policies on
  `profiles`, `class_students`, `parent_student` and friends call helper
  predicates that read those same tables; evaluating messaging permissions
  through that role re-enters RLS recursively.
- This adapter therefore connects with a dedicated read-only evaluator login
  and refuses every call that does not run inside an engine evaluation
  capability (`guard.is_elevated()`). Application code cannot use it as a
  general bypass.

Design:
- Minimal psycopg3 usage; each call opens a short-lived read-only transaction
  with a local `statement_timeout`, capped by the remaining request deadline,
  so nothing outlives the predicate call. A statement aborted after the
  caller's signal fired surfaces as `EvaluationCancelled`.
- Driver connection failures surface as `DataSourceUnavailable`; the engine
  does not retry.
"""
from __future__ import annotations

import logging
import os
from typing import Any, Iterable, List, Optional, Sequence, Set, Tuple
from uuid import UUID

try:
    import psycopg
    HAVE_PSYCOPG = True
except Exception:  # pragma: no cover - optional in some dev envs
    psycopg = None  # type: ignore
    HAVE_PSYCOPG = False

from .config import LIMITED_ROLE, dsn_username, is_prod_like
from .domain import Actor, Role
from .guard import evaluation_cancelled, is_elevated, read_budget_seconds
from .ports import DataSourceUnavailable, EvaluationCancelled

LOG = logging.getLogger("schulhof.messaging.repo")

_ACTOR_COLUMNS_SQL = """
    p.id::text,
    p.role::text,
    p.school_id::text,
    coalesce(p.first_name, ''),
    coalesce(p.last_name, ''),
    p.avatar_url
"""


def _default_evaluator_dsn() -> str:
    host = os.getenv("TEST_DB_HOST", "127.0.0.1")
    port = os.getenv("TEST_DB_PORT", "54322")
    user = os.getenv("MESSAGING_EVALUATOR_USER", "schulhof_evaluator")
    password = os.getenv("MESSAGING_EVALUATOR_PASSWORD", "CHANGE_ME_DEV")
    return f"postgresql://{user}:{password}@{host}:{port}/postgres"


def _dsn() -> str:
    """Resolve the evaluator DSN (first non-empty wins).

    Order: MESSAGING_DATABASE_URL, DATABASE_URL, then the local dev default
    outside production.
    """
    candidates = [os.getenv("MESSAGING_DATABASE_URL"), os.getenv("DATABASE_URL")]
    if not is_prod_like():
        candidates.append(_default_evaluator_dsn())
    for dsn in candidates:
        if dsn:
            return dsn
    raise RuntimeError("Database DSN unavailable for DBMessagingRepo")


def _uuid_or_none(value: str) -> Optional[str]:
    try:
        return str(UUID(str(value)))
    except (TypeError, ValueError, AttributeError):
        return None


def _row_to_actor(row: Tuple) -> Actor:
    return Actor(
        id=row[0],
        role=Role.parse(row[1]),
        tenant_id=row[2] or None,
        first_name=row[3] or "",
        last_name=row[4] or "",
        avatar_url=row[5],
    )


class DBMessagingRepo:
    """Directory + relationship store over the school schema.

    Parameters:
        dsn: Optional explicit evaluator DSN; resolved from env when omitted.
        statement_timeout_ms: Upper bound for each statement (local to the
            transaction).
    """

    def __init__(self, dsn: Optional[str] = None, *, statement_timeout_ms: int = 2000) -> None:
        if not HAVE_PSYCOPG:
            raise RuntimeError("psycopg3 is required for DBMessagingRepo")
        self._dsn = dsn or _dsn()
        if dsn_username(self._dsn).lower() == LIMITED_ROLE:
            raise RuntimeError(
                f"DBMessagingRepo must not use the RLS-limited role ({LIMITED_ROLE}); "
                "configure MESSAGING_DATABASE_URL with the evaluator login."
            )
        self._timeout_ms = int(statement_timeout_ms)

    # --- plumbing -------------------------------------------------------------
    def _statement_timeout_ms(self) -> int:
        """Configured timeout, lowered to what is left of the caller's deadline."""
        budget = read_budget_seconds()
        if budget is None:
            return self._timeout_ms
        return max(1, min(self._timeout_ms, int(budget * 1000)))

    def _fetch(self, op: str, query: str, params: Sequence[Any]) -> List[Tuple]:
        if not is_elevated():
            raise PermissionError("evaluation_capability_required")
        transient = (psycopg.OperationalError, psycopg.InterfaceError)
        try:
            with psycopg.connect(self._dsn) as conn:
                with conn.cursor() as cur:
                    cur.execute("set transaction read only")
                    cur.execute("select set_config('statement_timeout', %s, true)", (str(self._statement_timeout_ms()),))
                    cur.execute(query, tuple(params))
                    rows = cur.fetchall() or []
        except transient as exc:
            if evaluation_cancelled():
                raise EvaluationCancelled(f"evaluation_cancelled:{op}") from exc
            LOG.warning("messaging read failed op=%s err=%s", op, exc.__class__.__name__)
            raise DataSourceUnavailable(f"data_source_unavailable:{op}") from exc
        return list(rows)

    def _ids(self, op: str, query: str, params: Sequence[Any]) -> Set[str]:
        return {str(r[0]) for r in self._fetch(op, query, params) if r and r[0] is not None}

    # --- IdentityDirectoryProtocol -------------------------------------------
    def get_actor(self, actor_id: str) -> Optional[Actor]:
        uid = _uuid_or_none(actor_id)
        if uid is None:
            return None
        rows = self._fetch(
            "get_actor",
            f"select {_ACTOR_COLUMNS_SQL} from public.profiles p where p.id = %s::uuid",
            (uid,),
        )
        return _row_to_actor(rows[0]) if rows else None

    def get_actors(self, actor_ids: Iterable[str]) -> List[Actor]:
        uids = sorted({u for u in (_uuid_or_none(a) for a in actor_ids) if u})
        if not uids:
            return []
        rows = self._fetch(
            "get_actors",
            f"select {_ACTOR_COLUMNS_SQL} from public.profiles p where p.id = any(%s::uuid[]) order by p.id",
            (uids,),
        )
        return [_row_to_actor(r) for r in rows]

    def list_actors(self, *, tenant_id: Optional[str], roles: Iterable[Role]) -> List[Actor]:
        role_values = sorted({Role(r).value for r in roles})
        if not role_values:
            return []
        if tenant_id is None:
            rows = self._fetch(
                "list_actors",
                f"select {_ACTOR_COLUMNS_SQL} from public.profiles p "
                "where p.role::text = any(%s) order by p.id",
                (role_values,),
            )
        else:
            tid = _uuid_or_none(tenant_id)
            if tid is None:
                return []
            rows = self._fetch(
                "list_actors",
                f"select {_ACTOR_COLUMNS_SQL} from public.profiles p "
                "where p.school_id = %s::uuid and p.role::text = any(%s) order by p.id",
                (tid, role_values),
            )
        return [_row_to_actor(r) for r in rows]

    # --- RelationshipStoreProtocol -------------------------------------------
    def classes_taught_by(self, teacher_id: str) -> Set[str]:
        uid = _uuid_or_none(teacher_id)
        if uid is None:
            return set()
        # Subjects link to a primary class directly and to further classes via class_subjects.
        return self._ids(
            "classes_taught_by",
            """
            select s.class_id::text from public.subjects s
            where s.teacher_id = %s::uuid and s.class_id is not null
            union
            select cs.class_id::text from public.class_subjects cs
            join public.subjects s on s.id = cs.subject_id
            where s.teacher_id = %s::uuid
            """,
            (uid, uid),
        )

    def classes_of_student(self, student_id: str) -> Set[str]:
        uid = _uuid_or_none(student_id)
        if uid is None:
            return set()
        return self._ids(
            "classes_of_student",
            "select cs.class_id::text from public.class_students cs where cs.student_id = %s::uuid",
            (uid,),
        )

    def students_of_guardian(self, parent_id: str) -> Set[str]:
        uid = _uuid_or_none(parent_id)
        if uid is None:
            return set()
        return self._ids(
            "students_of_guardian",
            "select ps.student_id::text from public.parent_student ps where ps.parent_id = %s::uuid",
            (uid,),
        )

    def groups_of_member(self, user_id: str) -> Set[str]:
        uid = _uuid_or_none(user_id)
        if uid is None:
            return set()
        return self._ids(
            "groups_of_member",
            "select m.group_id::text from public.message_group_members m where m.user_id = %s::uuid",
            (uid,),
        )

    def members_of_groups(self, group_ids: Sequence[str]) -> Set[str]:
        gids = sorted({g for g in (_uuid_or_none(x) for x in group_ids) if g})
        if not gids:
            return set()
        return self._ids(
            "members_of_groups",
            "select distinct m.user_id::text from public.message_group_members m where m.group_id = any(%s::uuid[])",
            (gids,),
        )


__all__ = ["DBMessagingRepo", "HAVE_PSYCOPG"]
