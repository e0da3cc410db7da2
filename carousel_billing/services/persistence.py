"""
Single-statement upserts so concurrent writers never read-modify-write a row.

PostgreSQL (production) and SQLite (tests) share the ON CONFLICT syntax.
"""
from __future__ import annotations

from typing import Any, Dict, Iterable, Optional

from sqlalchemy.dialects import postgresql, sqlite


def dialect_insert(session):
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    raise RuntimeError(f"Unsupported database dialect for upserts: {dialect}")


def insert_if_absent(session, model, values: Dict[str, Any], conflict_cols: Iterable[str]) -> bool:
    """INSERT ... ON CONFLICT DO NOTHING. True when this call inserted the row."""
    insert = dialect_insert(session)
    stmt = insert(model.__table__).values(**values).on_conflict_do_nothing(
        index_elements=list(conflict_cols),
    )
    result = session.execute(stmt)
    return (result.rowcount or 0) > 0


def upsert(
    session,
    model,
    values: Dict[str, Any],
    conflict_cols: Iterable[str],
    update_values: Optional[Dict[str, Any]] = None,
) -> None:
    """
    INSERT ... ON CONFLICT DO UPDATE. update_values may reference the proposed
    row through the returned statement's `excluded`; by default every non-key
    column in `values` is overwritten with the proposed value.
    """
    insert = dialect_insert(session)
    conflict_cols = list(conflict_cols)
    stmt = insert(model.__table__).values(**values)
    if update_values is None:
        update_values = {k: stmt.excluded[k] for k in values if k not in conflict_cols}
    stmt = stmt.on_conflict_do_update(index_elements=conflict_cols, set_=update_values)
    session.execute(stmt)
