"""Dialect-aware INSERT .. ON CONFLICT helpers.

Core writes are upserts on natural composite keys; concurrent writers for the
same key resolve last-writer-wins inside the database instead of taking locks.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession


def _insert_for(db: AsyncSession, model: type) -> Any:
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model)
    if dialect == "sqlite":
        return sqlite.insert(model)
    raise RuntimeError(f"Upsert not supported for dialect {dialect!r}")


async def upsert(
    db: AsyncSession,
    model: type,
    values: dict[str, Any],
    conflict_columns: Sequence[str],
    update_columns: Sequence[str] | None = None,
) -> None:
    """Insert ``values`` or overwrite ``update_columns`` on a key conflict.

    When ``update_columns`` is omitted every non-key column in ``values`` is
    overwritten.
    """
    if update_columns is None:
        update_columns = [k for k in values if k not in conflict_columns]
    stmt = _insert_for(db, model).values(**values)
    stmt = stmt.on_conflict_do_update(
        index_elements=list(conflict_columns),
        set_={col: stmt.excluded[col] for col in update_columns},
    )
    await db.execute(stmt)


async def insert_ignore(
    db: AsyncSession,
    model: type,
    values: dict[str, Any],
    conflict_columns: Sequence[str],
) -> None:
    """Insert ``values`` unless a row with the same key already exists."""
    stmt = _insert_for(db, model).values(**values).on_conflict_do_nothing(index_elements=list(conflict_columns))
    await db.execute(stmt)
