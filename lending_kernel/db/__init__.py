"""Database layer - engine, base classes, types, and immutability."""

from lending_kernel.db.base import UUID, Base, TrackedBase, UUIDString
from lending_kernel.db.engine import (
    create_tables,
    get_engine,
    get_session,
    get_session_factory,
    session_scope,
)
from lending_kernel.db.types import Identifier, PayloadHash, Sequence, StateId, UTCDateTime

__all__ = [
    "get_engine",
    "get_session",
    "get_session_factory",
    "session_scope",
    "create_tables",
    "Base",
    "TrackedBase",
    "UUIDString",
    "UUID",
    "UTCDateTime",
    "Identifier",
    "StateId",
    "Sequence",
    "PayloadHash",
]
