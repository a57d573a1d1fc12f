"""Database layer - engine, base classes, and transaction scope."""

from einvoice_kernel.db.base import Base, TrackedBase, UUIDString
from einvoice_kernel.db.engine import (
    build_engine,
    create_tables,
    get_session_factory,
    transaction,
)

__all__ = [
    "Base",
    "TrackedBase",
    "UUIDString",
    "build_engine",
    "create_tables",
    "get_session_factory",
    "transaction",
]
