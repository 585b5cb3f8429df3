"""Database layer - engine, base classes and portable types."""

from hierarchy_kernel.db.base import UUID, Base, UTCDateTime, UUIDString
from hierarchy_kernel.db.engine import (
    create_tables,
    drop_tables,
    get_engine,
    get_session,
    get_session_factory,
    init_engine_from_url,
    reset_engine,
    session_scope,
)

__all__ = [
    "get_engine",
    "get_session",
    "get_session_factory",
    "init_engine_from_url",
    "reset_engine",
    "session_scope",
    "create_tables",
    "drop_tables",
    "Base",
    "UUIDString",
    "UTCDateTime",
    "UUID",
]
