"""
Module: hierarchy_kernel.db.base
Responsibility: Declarative base class for all SQLAlchemy ORM models.  Provides
    the UUID primary key convention, portable column types and the type
    annotation map used by every model.
Architecture position: Kernel > DB.  This is the lowest-level import target
    within the kernel.  ALL model files import from here.  This module MUST NOT
    import from models/, services/, selectors/, or outer layers.

Invariants enforced:
    - UUID primary keys: every model inherits a uuid4-generated primary key.
    - Timestamps are stored and returned as aware UTC datetimes on every
      backend.  SQLite drops tzinfo on the way in, so UTCDateTime re-attaches
      it on the way out.

Failure modes:
    - ValueError from UTCDateTime if a value that is not a datetime is bound.
"""

from datetime import datetime, timezone
from typing import ClassVar
from uuid import UUID as PyUUID, uuid4

from sqlalchemy import DateTime, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


class UUIDString(TypeDecorator):
    """
    UUID type stored as String(36) for cross-database portability.

    Guarantees:
        - process_bind_param: UUID -> str on INSERT/UPDATE.
        - process_result_value: str -> UUID on SELECT.
    """

    impl = String(36)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None:
            return str(value)
        return None

    def process_result_value(self, value, dialect):
        if value is not None:
            return PyUUID(value)
        return None


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware datetime normalized to UTC.

    Guarantees:
        - Naive values are assumed to already be UTC.
        - Values read back are always aware (tzinfo=UTC).
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if not isinstance(value, datetime):
            raise ValueError(f"Expected datetime, got {type(value).__name__}")
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    """
    Declarative base for all SQLAlchemy models.

    Guarantees:
        - id is always a uuid4-generated UUID stored as String(36).
        - datetime maps to UTCDateTime -- always timezone-aware.
    """

    type_annotation_map: ClassVar[dict] = {
        datetime: UTCDateTime(),
        PyUUID: UUIDString(),
    }

    id: Mapped[PyUUID] = mapped_column(
        UUIDString(),
        primary_key=True,
        default=uuid4,
    )


# Re-export UUID for convenience
UUID = PyUUID
