from __future__ import annotations

from typing import Any

from sqlalchemy import insert
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session


def insert_ignoring_conflicts(session: Session, model, values: dict[str, Any]) -> bool:
    """Insert one row unless a unique constraint already holds it.

    Returns True when the row was inserted. On PostgreSQL and SQLite this is a
    single ``INSERT .. ON CONFLICT DO NOTHING``; other dialects fall back to a
    savepoint-guarded insert where a duplicate-key error means "already there".
    """
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        stmt = pg_insert(model).values(**values).on_conflict_do_nothing()
        return session.execute(stmt).rowcount == 1
    if dialect == "sqlite":
        stmt = sqlite_insert(model).values(**values).on_conflict_do_nothing()
        return session.execute(stmt).rowcount == 1
    try:
        with session.begin_nested():
            session.execute(insert(model).values(**values))
    except IntegrityError:
        return False
    return True
