"""Database layer - engine, declarative base, and column types."""

from change_control.db.base import Base, IdentityInteger, JSONDocument
from change_control.db.decision_guard import (
    register_decision_guard,
    unregister_decision_guard,
)
from change_control.db.engine import (
    create_tables,
    dialect_of,
    get_engine,
    get_session,
    session_scope,
)

__all__ = [
    "Base",
    "IdentityInteger",
    "JSONDocument",
    "register_decision_guard",
    "unregister_decision_guard",
    "create_tables",
    "dialect_of",
    "get_engine",
    "get_session",
    "session_scope",
]
