"""Database engine and session management."""

from __future__ import annotations

from .session import (
    close_database,
    create_engine,
    create_session_factory,
    init_database,
    session_scope,
)

__all__ = [
    "close_database",
    "create_engine",
    "create_session_factory",
    "init_database",
    "session_scope",
]
