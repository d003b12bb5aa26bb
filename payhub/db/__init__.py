"""Database package: shared engine and session factory."""

from payhub.db.base import Base, close_db, create_engine, get_session_factory, init_db, ping

__all__ = [
    "Base",
    "close_db",
    "create_engine",
    "get_session_factory",
    "init_db",
    "ping",
]
