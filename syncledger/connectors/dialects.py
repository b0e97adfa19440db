"""Dialect-specific ``INSERT ... ON CONFLICT`` constructors."""

from __future__ import annotations

from typing import Any

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

__all__ = ["upsert_insert"]


def upsert_insert(session: Session, table: Any) -> Any:
    """Return an insert construct for ``table`` supporting ``on_conflict_do_update``.

    PostgreSQL (psycopg) is the production store and SQLite backs the test
    suite; both expose the same upsert API in SQLAlchemy.
    """

    name = session.get_bind().dialect.name
    if name == "postgresql":
        return postgresql.insert(table)
    if name == "sqlite":
        return sqlite.insert(table)
    raise NotImplementedError(f"upserts are not supported on the {name!r} dialect")
