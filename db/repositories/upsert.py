"""
db/repositories/upsert.py

Dialect-aware INSERT ... ON CONFLICT builder.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session


def dialect_insert(session: Session, table: Any) -> Any:
    """
    Return an ``insert()`` construct supporting ``on_conflict_do_update``.

    PostgreSQL is the production target; SQLite shares the same conflict API
    and backs the test suite.
    """
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(table)
    if dialect == "sqlite":
        return sqlite.insert(table)
    raise RuntimeError(f"Upserts are not supported for dialect {dialect!r}.")
