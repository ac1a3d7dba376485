"""
Module: credits_kernel.db.base
Responsibility: Declarative base and portable column types shared by every
    ORM model in the credits kernel.
Architecture position: Kernel > DB.  MUST NOT import from models/, services/,
    selectors/ or outer layers.

Invariants enforced:
    - Every row has a uuid4 primary key stored as String(36).
    - Every timestamp is stored and returned as a timezone-aware UTC datetime,
      on PostgreSQL and on SQLite alike.
    - int maps to BigInteger.
"""

from datetime import UTC, datetime
from typing import ClassVar
from uuid import UUID as PyUUID, uuid4

from sqlalchemy import BigInteger, DateTime, String
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
            return PyUUID(str(value))
        return None


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware UTC timestamp.

    Contract:
        Values are normalized to UTC before storage.  SQLite has no timezone
        support, so the offset is dropped on the way in and restored on the
        way out; PostgreSQL keeps TIMESTAMP WITH TIME ZONE semantics.

    Guarantees:
        - Naive values passed in are taken to be UTC.
        - Loaded values always carry tzinfo=UTC.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        value = value.astimezone(UTC)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


class Base(DeclarativeBase):
    """
    Declarative base for all SQLAlchemy models.

    Contract:
        Every ORM model in the system inherits from Base.  Base provides a
        UUID primary key and a type_annotation_map that keeps column types
        consistent across the schema.

    Guarantees:
        - id is always a uuid4-generated UUID stored as String(36).
        - datetime maps to UTCDateTime -- always timezone-aware.
        - int maps to BigInteger.
    """

    type_annotation_map: ClassVar[dict] = {
        datetime: UTCDateTime(),
        PyUUID: UUIDString(),
        int: BigInteger,
    }

    id: Mapped[PyUUID] = mapped_column(
        UUIDString(),
        primary_key=True,
        default=uuid4,
    )


# Re-export UUID for convenience
UUID = PyUUID
