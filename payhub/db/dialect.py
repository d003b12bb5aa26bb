"""Dialect-specific INSERT constructs for ON CONFLICT statements."""

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession


def upsert_insert(session: AsyncSession, entity):
    """Return an ``insert()`` supporting ``on_conflict_do_*`` for the session's dialect.

    Raises:
        NotImplementedError: For dialects without ON CONFLICT support
    """
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(entity)
    if dialect == "sqlite":
        return sqlite.insert(entity)
    raise NotImplementedError(f"ON CONFLICT inserts are not supported on '{dialect}'")
