"""Async engine and session factory for the bus tables.

Engines are created explicitly and owned by the caller (normally the Bus),
so tests can point each case at its own database.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
import logging
from typing import TYPE_CHECKING, Any

from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from eventbus_service.core.database import Base
from eventbus_service.core.settings import DatabaseSettings, get_db_settings

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

logger = logging.getLogger(__name__)

# Milliseconds SQLite waits on a locked database before failing
SQLITE_BUSY_TIMEOUT_MS = 5000


def create_engine(settings: DatabaseSettings | None = None) -> AsyncEngine:
    """Create an async engine from database settings.

    SQLite connections are switched to WAL mode with a busy timeout so
    several workers can share one database file.
    """
    settings = settings or get_db_settings()
    engine = create_async_engine(
        settings.url,
        echo=settings.echo,
        pool_pre_ping=settings.pool_pre_ping,
    )

    if settings.is_sqlite:

        @event.listens_for(engine.sync_engine, "connect")
        def _configure_sqlite(dbapi_conn: Any, connection_record: Any) -> None:
            _ = connection_record
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS}")
            cursor.close()

    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create the session factory used by the SQLAlchemy stores."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@asynccontextmanager
async def session_scope(
    factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession]:
    """Open a session that commits on success and rolls back on error.

    Example:
        async with session_scope(factory) as session:
            session.add(record)
    """
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except BaseException:
            await session.rollback()
            raise


async def init_database(engine: AsyncEngine, *, create_tables: bool = True) -> None:
    """Check connectivity and optionally create the bus tables.

    Table creation is idempotent (``checkfirst``), for environments where
    migrations have not run.
    """
    # Register models on Base.metadata
    from eventbus_service.infra.events.idempotency import models as _idempotency_models
    from eventbus_service.infra.events.outbox import models as _outbox_models

    _ = _idempotency_models, _outbox_models

    async with engine.begin() as conn:
        await conn.execute(text("SELECT 1"))
        if create_tables:
            await conn.run_sync(Base.metadata.create_all)

    logger.info(
        "Database initialized",
        extra={"dialect": engine.dialect.name, "create_tables": create_tables},
    )


async def close_database(engine: AsyncEngine) -> None:
    """Dispose of the engine's connection pool."""
    await engine.dispose()
    logger.info("Database connection closed")


__all__ = [
    "close_database",
    "create_engine",
    "create_session_factory",
    "init_database",
    "session_scope",
]
