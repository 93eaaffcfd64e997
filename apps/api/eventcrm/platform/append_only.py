"""Storage-level enforcement of append-only and archive-only entities.

Two policies exist:

* ``IMMUTABLE`` (ledger rows such as activities, property values and association history):
  only INSERT is allowed; UPDATE, DELETE and upserts that overwrite an existing row are rejected.
* ``ARCHIVE_ONLY`` (contacts, companies, deals, tickets, workflows, stage definitions):
  UPDATE is allowed (archival sets ``archived_at``), DELETE is rejected.

The guard hooks SQLAlchemy at three levels so no code path can route around it:

* ``Session.before_flush`` rejects dirty or deleted ORM instances before the flush emits SQL;
* ``Session.do_orm_execute`` rejects ORM bulk ``update()`` / ``delete()`` statements;
* ``Engine.before_cursor_execute`` inspects every statement handed to the DBAPI, which covers
  Core constructs, ``text()``, ``exec_driver_sql`` and dialect upserts
  (``ON CONFLICT DO UPDATE``, ``ON DUPLICATE KEY UPDATE``, ``REPLACE INTO``, ``MERGE INTO``).

Registered tables also carry database triggers (``guard_trigger_ddl``) so writers that bypass the
application entirely still cannot rewrite the ledger.
"""

from __future__ import annotations

import enum
import logging
import re
from typing import Any

from sqlalchemy import DDL, Table, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import ORMExecuteState, Session, UOWTransaction

from eventcrm.errors import ForbiddenMutationError
from eventcrm.metrics import observe_forbidden_mutation


logger = logging.getLogger("eventcrm.platform.append_only")


class MutationPolicy(str, enum.Enum):
    IMMUTABLE = "immutable"
    ARCHIVE_ONLY = "archive_only"


_policies: dict[str, MutationPolicy] = {}
_installed = False

GUARD_FUNCTION_NAME = "crm_append_only_guard"
TRIGGER_DIALECTS = ("sqlite", "postgresql")

_COMMENT_RE = re.compile(r"--[^\n]*|/\*.*?\*/", re.DOTALL)
_TABLE = r"(?:[\"`\[]?\w+[\"`\]]?\.)?[\"`\[]?(?P<table>\w+)[\"`\]]?"
_MUTATION_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    (
        "update",
        re.compile(r"\bUPDATE\s+(?:OR\s+\w+\s+)?(?:ONLY\s+)?" + _TABLE + r"(?=\s+(?:(?:AS\s+)?\w+\s+)?SET\b)", re.IGNORECASE),
    ),
    ("delete", re.compile(r"\bDELETE\s+FROM\s+(?:ONLY\s+)?" + _TABLE, re.IGNORECASE)),
    ("delete", re.compile(r"\bTRUNCATE\s+(?:TABLE\s+)?(?:ONLY\s+)?" + _TABLE, re.IGNORECASE)),
    ("update", re.compile(r"\bREPLACE\s+INTO\s+" + _TABLE, re.IGNORECASE)),
    ("update", re.compile(r"\bMERGE\s+INTO\s+" + _TABLE, re.IGNORECASE)),
)
_INSERT_RE = re.compile(r"\bINSERT\s+(?:OR\s+\w+\s+)?INTO\s+" + _TABLE, re.IGNORECASE)
_UPSERT_RE = re.compile(r"\bON\s+CONFLICT\b.*?\bDO\s+UPDATE\b|\bON\s+DUPLICATE\s+KEY\s+UPDATE\b", re.IGNORECASE | re.DOTALL)


def register_policy(table: Table | str, policy: MutationPolicy) -> None:
    name = table if isinstance(table, str) else table.name
    _policies[name] = policy
    if isinstance(table, Table):
        for dialect_name in TRIGGER_DIALECTS:
            for statement in guard_trigger_ddl(name, policy, dialect_name):
                event.listen(table, "after_create", DDL(statement).execute_if(dialect=dialect_name))


def policy_for(table_name: str) -> MutationPolicy | None:
    return _policies.get(table_name)


def check_mutation(table_name: str, verb: str) -> None:
    """Raise ForbiddenMutationError when ``verb`` ("update" or "delete") is not allowed."""
    policy = _policies.get(table_name)
    if policy is None:
        return
    forbidden = verb == "delete" or (verb == "update" and policy is MutationPolicy.IMMUTABLE)
    if not forbidden:
        return
    observe_forbidden_mutation(table_name, verb)
    logger.warning("append_only.rejected", extra={"entity": table_name, "verb": verb, "reason": policy.value})
    raise ForbiddenMutationError(table_name, verb)


def mutations_in_sql(statement: str) -> list[tuple[str, str]]:
    """Return ``(table, verb)`` for every row-rewriting clause found in ``statement``.

    Comments are stripped first and the whole text is scanned, so CTE-prefixed statements and
    upserts are seen as well as plain ``UPDATE`` / ``DELETE``.
    """
    sql = _COMMENT_RE.sub(" ", statement)
    found: list[tuple[str, str]] = []
    for verb, pattern in _MUTATION_PATTERNS:
        for match in pattern.finditer(sql):
            found.append((match.group("table").lower(), verb))
    if _UPSERT_RE.search(sql):
        for match in _INSERT_RE.finditer(sql):
            found.append((match.group("table").lower(), "update"))
    return found


def guard_trigger_ddl(table_name: str, policy: MutationPolicy, dialect_name: str) -> list[str]:
    """CREATE statements for the database triggers enforcing ``policy`` on ``table_name``."""
    verbs = ("DELETE",) if policy is MutationPolicy.ARCHIVE_ONLY else ("UPDATE", "DELETE")
    if dialect_name == "sqlite":
        return [
            f"CREATE TRIGGER IF NOT EXISTS {table_name}_no_{verb.lower()} BEFORE {verb} ON {table_name} "
            f"BEGIN SELECT RAISE(ABORT, '{table_name} is append-only'); END"
            for verb in verbs
        ]
    if dialect_name == "postgresql":
        statements = [
            f"CREATE OR REPLACE FUNCTION {GUARD_FUNCTION_NAME}() RETURNS trigger AS $$ "
            "BEGIN RAISE EXCEPTION USING MESSAGE = TG_TABLE_NAME || ' is append-only'; END "
            "$$ LANGUAGE plpgsql"
        ]
        for verb in verbs:
            trigger_name = f"{table_name}_no_{verb.lower()}"
            statements.append(f"DROP TRIGGER IF EXISTS {trigger_name} ON {table_name}")
            statements.append(
                f"CREATE TRIGGER {trigger_name} BEFORE {verb} ON {table_name} "
                f"FOR EACH ROW EXECUTE FUNCTION {GUARD_FUNCTION_NAME}()"
            )
        return statements
    return []


def _table_name_of(instance: Any) -> str | None:
    table = getattr(type(instance), "__table__", None)
    return table.name if table is not None else None


def _before_flush(session: Session, flush_context: UOWTransaction, instances: Any) -> None:
    for instance in list(session.deleted):
        name = _table_name_of(instance)
        if name is not None:
            check_mutation(name, "delete")
    for instance in list(session.dirty):
        if not session.is_modified(instance, include_collections=False):
            continue
        name = _table_name_of(instance)
        if name is not None:
            check_mutation(name, "update")


def _do_orm_execute(state: ORMExecuteState) -> None:
    if not (state.is_update or state.is_delete):
        return
    verb = "update" if state.is_update else "delete"
    for mapper in state.all_mappers:
        check_mutation(mapper.local_table.name, verb)


def _before_cursor_execute(
    conn: Any,
    cursor: Any,
    statement: str,
    parameters: Any,
    context: Any,
    executemany: bool,
) -> None:
    for table_name, verb in mutations_in_sql(statement):
        check_mutation(table_name, verb)


def install_append_only_guard() -> None:
    global _installed
    if _installed:
        return
    event.listen(Session, "before_flush", _before_flush)
    event.listen(Session, "do_orm_execute", _do_orm_execute)
    event.listen(Engine, "before_cursor_execute", _before_cursor_execute)
    _installed = True
