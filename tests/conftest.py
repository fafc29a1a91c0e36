"""Pytest configuration and shared fixtures.

Organization:
    - Settings Fixtures: Small delays and timeouts so tests run fast
    - Database Fixtures: File-backed SQLite per test via tmp_path
    - Event Bus Fixtures: Registry, stores, emitter and a wired Bus
    - Utility Fixtures: Handler recorders and payload factories

Every test gets its own database file, so stores never share state across
tests. Settings loaders are cleared around each test so environment
overrides set with ``monkeypatch`` take effect.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from typing import TYPE_CHECKING, Any
import uuid

import pytest

from eventbus_service.app.bus import Bus
from eventbus_service.core.events import (
    Event,
    EventEmitter,
    EventMeta,
    IdempotencyGuard,
    SchemaRegistry,
)
from eventbus_service.core.events.catalog import register_catalog
from eventbus_service.core.settings import (
    DatabaseSettings,
    EventSettings,
    IdempotencySettings,
    OutboxSettings,
    clear_settings_cache,
)
from eventbus_service.infra.database import (
    close_database,
    create_engine,
    create_session_factory,
    init_database,
)
from eventbus_service.infra.events.idempotency import SqlAlchemyIdempotencyStore
from eventbus_service.infra.events.outbox import SqlAlchemyOutboxStore

if TYPE_CHECKING:
    from pathlib import Path

    from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker


@pytest.fixture(autouse=True)
def _clear_settings_cache():
    """Reset cached settings before and after each test."""
    clear_settings_cache()
    yield
    clear_settings_cache()


# ============================================================================
# Settings Fixtures
# ============================================================================


@pytest.fixture
def event_settings() -> EventSettings:
    return EventSettings(handler_concurrency=8, drain_timeout=1.0)


@pytest.fixture
def outbox_settings() -> OutboxSettings:
    """Outbox settings with millisecond delays.

    ``max_retries`` is 3 so dead-letter paths need only a few passes.
    """
    return OutboxSettings(
        poll_interval=0.01,
        batch_size=10,
        max_retries=3,
        base_retry_delay=0.01,
        max_retry_delay=0.05,
        jitter_ratio=0.1,
        claim_timeout=30.0,
        shutdown_timeout=2.0,
    )


@pytest.fixture
def idempotency_settings() -> IdempotencySettings:
    return IdempotencySettings(ttl=3600, in_progress_timeout=60, lease_ttl=30)


# ============================================================================
# Database Fixtures
# ============================================================================


@pytest.fixture
def db_settings(tmp_path: Path) -> DatabaseSettings:
    return DatabaseSettings(url=f"sqlite+aiosqlite:///{tmp_path / 'eventbus.db'}")


@pytest.fixture
async def engine(db_settings: DatabaseSettings) -> AsyncGenerator[AsyncEngine]:
    """Engine with the bus tables created."""
    engine = create_engine(db_settings)
    await init_database(engine)
    yield engine
    await close_database(engine)


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


# ============================================================================
# Event Bus Fixtures
# ============================================================================


@pytest.fixture
def registry() -> SchemaRegistry:
    """Registry with the built-in catalog registered."""
    return register_catalog(SchemaRegistry())


@pytest.fixture
def outbox_store(
    session_factory: async_sessionmaker[AsyncSession],
    outbox_settings: OutboxSettings,
) -> SqlAlchemyOutboxStore:
    return SqlAlchemyOutboxStore(session_factory, claim_timeout=outbox_settings.claim_timeout)


@pytest.fixture
def idempotency_store(
    session_factory: async_sessionmaker[AsyncSession],
) -> SqlAlchemyIdempotencyStore:
    return SqlAlchemyIdempotencyStore(session_factory)


@pytest.fixture
def guard(
    idempotency_store: SqlAlchemyIdempotencyStore,
    idempotency_settings: IdempotencySettings,
) -> IdempotencyGuard:
    return IdempotencyGuard(idempotency_store, idempotency_settings)


@pytest.fixture
async def emitter(
    registry: SchemaRegistry,
    outbox_store: SqlAlchemyOutboxStore,
    event_settings: EventSettings,
) -> AsyncGenerator[EventEmitter]:
    emitter = EventEmitter(registry, outbox=outbox_store, settings=event_settings)
    yield emitter
    await emitter.drain(timeout=1.0)


@pytest.fixture
async def bus(
    session_factory: async_sessionmaker[AsyncSession],
    registry: SchemaRegistry,
    event_settings: EventSettings,
    outbox_settings: OutboxSettings,
    idempotency_settings: IdempotencySettings,
) -> AsyncGenerator[Bus]:
    """Bus sharing the test database; the worker is not started."""
    bus = Bus.from_session_factory(
        session_factory,
        registry=registry,
        event_settings=event_settings,
        outbox_settings=outbox_settings,
        idempotency_settings=idempotency_settings,
    )
    await bus.init()
    yield bus
    await bus.shutdown()
    bus.reset()


# ============================================================================
# Utility Fixtures
# ============================================================================


class HandlerRecorder:
    """Async handler that records every event it receives.

    Args:
        fail_times: Raise on the first N invocations, then succeed
        error: Exception raised while failing
    """

    def __init__(self, fail_times: int = 0, error: Exception | None = None) -> None:
        self.events: list[Event] = []
        self.calls = 0
        self.fail_times = fail_times
        self.error = error or RuntimeError("handler failed")

    async def __call__(self, event: Event) -> None:
        self.calls += 1
        if self.calls <= self.fail_times:
            raise self.error
        self.events.append(event)

    @property
    def event_ids(self) -> list[str]:
        return [event.event_id for event in self.events]


@pytest.fixture
def recorder() -> HandlerRecorder:
    return HandlerRecorder()


@pytest.fixture
def make_recorder():
    """Factory for recorders with a failure budget."""

    def _make(fail_times: int = 0, error: Exception | None = None) -> HandlerRecorder:
        return HandlerRecorder(fail_times=fail_times, error=error)

    return _make


@pytest.fixture
def tenant_payload() -> dict[str, Any]:
    tenant_id = f"t-{uuid.uuid4().hex[:8]}"
    return {"tenant_id": tenant_id, "slug": "acme", "name": "Acme Inc", "owner_id": "u-1"}


@pytest.fixture
def make_event():
    """Factory for envelopes written straight to a store (no validation)."""

    def _make(
        event_type: str = "tenant.created",
        *,
        scope_id: str | None = None,
        **payload: Any,
    ) -> Event:
        return Event(
            type=event_type,
            payload=payload or {"tenant_id": scope_id or "t-1", "name": "Acme"},
            meta=EventMeta(scope_type="tenant" if scope_id else None, scope_id=scope_id),
        )

    return _make
