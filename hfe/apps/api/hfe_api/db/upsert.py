"""Dialect-aware INSERT ... ON CONFLICT DO NOTHING.

PostgreSQL in deployment, SQLite in tests; both support conflict targets on
partial unique indexes.
"""

from typing import Any, Optional

from sqlalchemy import ColumnElement
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session


def insert_or_ignore(
    db: Session,
    model: Any,
    values: dict[str, Any],
    *,
    index_elements: list[str],
    index_where: Optional[ColumnElement[bool]] = None,
) -> bool:
    """Insert values unless the conflict target already holds a row.

    Does not commit. Returns True if this call inserted the row.
    """
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        stmt = pg_insert(model)
    elif dialect == "sqlite":
        stmt = sqlite_insert(model)
    else:
        raise NotImplementedError(f"insert_or_ignore not supported on {dialect}")

    stmt = stmt.values(**values).on_conflict_do_nothing(
        index_elements=index_elements,
        index_where=index_where,
    )
    result = db.execute(stmt)
    return result.rowcount == 1
