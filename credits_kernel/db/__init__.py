"""Database layer - engine, base classes, and immutability listeners."""

from credits_kernel.db.base import UUID, Base, UTCDateTime, UUIDString
from credits_kernel.db.engine import (
    create_tables,
    get_engine,
    get_session_factory,
    session_scope,
    transaction_scope,
)

__all__ = [
    "get_engine",
    "get_session_factory",
    "session_scope",
    "transaction_scope",
    "create_tables",
    "Base",
    "UTCDateTime",
    "UUIDString",
    "UUID",
]
