"""
Immutability guard for closed workflow items and append-only logs.

Two layers, both installed by ``register_guards()``:

1. ORM: a ``before_flush`` listener on every SQLAlchemy Session rejects
   any UPDATE / DELETE of an RfqItem or OrderItem whose *loaded* state is
   terminal, and any UPDATE / DELETE of an AuditLog or ActivityLog row.
   A flush that moves an item *into* a terminal state is allowed; every
   flush after that is not.
2. Database: ``after_create`` DDL installs a BEFORE UPDATE / DELETE
   trigger on each item table (SQLite and PostgreSQL variants) so raw SQL
   that never touches the ORM is rejected as well.

Usage:
    from app.models.immutability import assert_mutable
    assert_mutable(item)          # raises ImmutableItemError when closed
"""

import logging

from sqlalchemy import DDL, event, inspect, select
from sqlalchemy.orm import Session

from app.core.exceptions import ConflictError, ImmutableItemError
from app.models.audit import AuditLog
from app.models.trade import INITIAL_STATES, TERMINAL_STATES, OrderItem, RfqItem
from app.models.workflow import ActivityLog

logger = logging.getLogger(__name__)

_ITEM_MODELS = (RfqItem, OrderItem)
_APPEND_ONLY_MODELS = (AuditLog, ActivityLog)


def assert_mutable(item) -> None:
    """Raise ImmutableItemError if *item* is in a terminal state."""
    if item.state in TERMINAL_STATES[item.ENTITY_KIND]:
        raise ImmutableItemError(item.ENTITY_KIND, item.id, item.state)


def _loaded_state(session, item) -> str | None:
    """State as last read from the database (before any pending change)."""
    history = inspect(item).attrs.state.history
    if history.deleted:
        return history.deleted[0]
    if history.unchanged:
        return history.unchanged[0]
    if item.id is None:
        return None
    model = type(item)
    with session.no_autoflush:
        return session.execute(select(model.state).where(model.id == item.id)).scalar()


def _guard_flush(session, flush_context, instances):
    for obj in list(session.dirty):
        if not session.is_modified(obj, include_collections=False):
            continue
        if isinstance(obj, _APPEND_ONLY_MODELS):
            raise ConflictError(type(obj).__name__, "id", str(obj.id))
        if isinstance(obj, _ITEM_MODELS):
            old_state = _loaded_state(session, obj)
            if old_state in TERMINAL_STATES[obj.ENTITY_KIND]:
                logger.warning(
                    "Blocked write to closed %s %s (state=%s)",
                    obj.ENTITY_KIND, obj.id, old_state,
                    extra={"entity_type": obj.ENTITY_KIND, "entity_id": obj.id,
                           "event_type": "immutable_item"},
                )
                raise ImmutableItemError(obj.ENTITY_KIND, obj.id, old_state)

    for obj in list(session.deleted):
        if isinstance(obj, _APPEND_ONLY_MODELS):
            raise ConflictError(type(obj).__name__, "id", str(obj.id))
        if isinstance(obj, _ITEM_MODELS):
            old_state = _loaded_state(session, obj)
            if old_state in TERMINAL_STATES[obj.ENTITY_KIND]:
                raise ImmutableItemError(obj.ENTITY_KIND, obj.id, old_state)
            # Items that have left their initial state are soft-deleted only.
            if old_state != INITIAL_STATES[obj.ENTITY_KIND]:
                raise ConflictError(type(obj).__name__, "state", old_state)


# ── Database triggers ────────────────────────────────────────────────────────


def _quoted(states) -> str:
    return ", ".join(f"'{s}'" for s in sorted(states))


def _sqlite_triggers(table: str, states) -> list[DDL]:
    ddl = []
    for op in ("UPDATE", "DELETE"):
        ddl.append(DDL(
            f"CREATE TRIGGER IF NOT EXISTS trg_{table}_immutable_{op.lower()} "
            f"BEFORE {op} ON {table} "
            f"FOR EACH ROW WHEN OLD.state IN ({_quoted(states)}) "
            f"BEGIN SELECT RAISE(ABORT, 'IMMUTABLE_ITEM: closed row in {table}'); END"
        ).execute_if(dialect="sqlite"))
    return ddl


def _postgres_triggers(table: str, states) -> list[DDL]:
    fn = f"prevent_closed_{table}_modification"
    return [
        DDL(
            f"CREATE OR REPLACE FUNCTION {fn}() RETURNS trigger AS $$ "
            f"BEGIN "
            f"IF OLD.state IN ({_quoted(states)}) THEN "
            f"RAISE EXCEPTION USING MESSAGE = 'IMMUTABLE_ITEM: closed row in ' || TG_TABLE_NAME; "
            f"END IF; "
            f"IF TG_OP = 'DELETE' THEN RETURN OLD; END IF; "
            f"RETURN NEW; "
            f"END; $$ LANGUAGE plpgsql"
        ).execute_if(dialect="postgresql"),
        DDL(
            f"CREATE TRIGGER trg_{table}_immutable "
            f"BEFORE UPDATE OR DELETE ON {table} "
            f"FOR EACH ROW EXECUTE FUNCTION {fn}()"
        ).execute_if(dialect="postgresql"),
    ]


def register_guards():
    """Install the flush listener and table triggers (idempotent)."""
    if not event.contains(Session, "before_flush", _guard_flush):
        event.listen(Session, "before_flush", _guard_flush)

    for model in _ITEM_MODELS:
        table = model.__table__
        if table.info.get("immutability_ddl"):
            continue
        states = TERMINAL_STATES[model.ENTITY_KIND]
        for ddl in _sqlite_triggers(table.name, states) + _postgres_triggers(table.name, states):
            event.listen(table, "after_create", ddl)
        table.info["immutability_ddl"] = True
