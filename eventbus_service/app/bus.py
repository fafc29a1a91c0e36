"""The event bus: one owner for every event-system component.

A ``Bus`` is built once at startup and passed to the code that needs it.
It owns the schema registry, the emitter, the outbox store and worker, the
dead-letter manager and the idempotency guard, so nothing in the event
system lives in module globals.

Usage:
    bus = Bus.from_settings()
    register_catalog(bus.registry)
    await bus.init(start_worker=True)

    bus.on("tenant.created", send_welcome_email)
    await bus.emit_reliable("tenant.created", payload)

    await bus.shutdown()
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from eventbus_service.core.events.emitter import EventEmitter
from eventbus_service.core.events.idempotency import IdempotencyGuard, with_idempotency
from eventbus_service.core.events.registry import SchemaRegistry
from eventbus_service.core.exceptions import ConfigurationError
from eventbus_service.core.settings import (
    DatabaseSettings,
    EventSettings,
    IdempotencySettings,
    OutboxSettings,
    get_db_settings,
    get_outbox_settings,
)
from eventbus_service.infra.database import (
    close_database,
    create_engine,
    create_session_factory,
    init_database,
)
from eventbus_service.infra.events.idempotency import SqlAlchemyIdempotencyStore
from eventbus_service.infra.events.outbox import (
    DeadLetterManager,
    OutboxWorker,
    SqlAlchemyOutboxStore,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Mapping

    from pydantic import BaseModel
    from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

    from eventbus_service.core.events.base import Event
    from eventbus_service.core.events.emitter import EventHandler, Unsubscribe
    from eventbus_service.core.events.idempotency import IdempotencyStore, IdempotentOutcome
    from eventbus_service.core.events.outbox import OutboxStore
    from eventbus_service.infra.events.outbox.processor import PermanentFailureHook

logger = logging.getLogger(__name__)


class Bus:
    """Event bus with optional durable delivery and idempotency.

    Without an outbox store the bus supports ``emit`` only; ``emit_reliable``,
    the worker and the DLQ then raise :class:`ConfigurationError`.

    Args:
        registry: Schema registry (a new empty one if omitted)
        outbox: Outbox store for reliable delivery
        idempotency_store: Store backing the idempotency guard
        event_settings: Emitter settings
        outbox_settings: Worker settings
        idempotency_settings: Idempotency record lifetimes
        on_permanent_failure: Hook invoked when an entry is dead-lettered
        engine: Engine the stores use; disposed on shutdown when ``owns_engine``
        owns_engine: Whether :meth:`shutdown` disposes ``engine``
        create_tables: Create the bus tables in :meth:`init`
    """

    def __init__(
        self,
        *,
        registry: SchemaRegistry | None = None,
        outbox: OutboxStore | None = None,
        idempotency_store: IdempotencyStore | None = None,
        event_settings: EventSettings | None = None,
        outbox_settings: OutboxSettings | None = None,
        idempotency_settings: IdempotencySettings | None = None,
        on_permanent_failure: PermanentFailureHook | None = None,
        engine: AsyncEngine | None = None,
        owns_engine: bool = False,
        create_tables: bool = True,
    ) -> None:
        self.registry = registry if registry is not None else SchemaRegistry()
        self.outbox = outbox
        self.emitter = EventEmitter(self.registry, outbox=outbox, settings=event_settings)
        self._worker = (
            OutboxWorker(
                outbox,
                self.emitter,
                settings=outbox_settings,
                on_permanent_failure=on_permanent_failure,
            )
            if outbox is not None
            else None
        )
        self._dlq = DeadLetterManager(outbox) if outbox is not None else None
        self._idempotency = (
            IdempotencyGuard(idempotency_store, idempotency_settings)
            if idempotency_store is not None
            else None
        )
        self._engine = engine
        self._owns_engine = owns_engine
        self._create_tables = create_tables
        self._initialized = False

    # ──────────────────────────────────────────────────────────────
    # Construction
    # ──────────────────────────────────────────────────────────────

    @classmethod
    def from_session_factory(
        cls,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        outbox_settings: OutboxSettings | None = None,
        **kwargs: Any,
    ) -> Bus:
        """Build a bus whose stores share ``session_factory``."""
        outbox_settings = outbox_settings or get_outbox_settings()
        return cls(
            outbox=SqlAlchemyOutboxStore(
                session_factory, claim_timeout=outbox_settings.claim_timeout
            ),
            idempotency_store=SqlAlchemyIdempotencyStore(session_factory),
            outbox_settings=outbox_settings,
            **kwargs,
        )

    @classmethod
    def from_settings(cls, db_settings: DatabaseSettings | None = None, **kwargs: Any) -> Bus:
        """Build a bus with its own engine from database settings."""
        db_settings = db_settings or get_db_settings()
        engine = create_engine(db_settings)
        kwargs.setdefault("create_tables", db_settings.create_tables)
        return cls.from_session_factory(
            create_session_factory(engine),
            engine=engine,
            owns_engine=True,
            **kwargs,
        )

    # ──────────────────────────────────────────────────────────────
    # Lifecycle
    # ──────────────────────────────────────────────────────────────

    async def init(self, *, start_worker: bool = False) -> None:
        """Prepare storage and optionally start the outbox worker."""
        if not self._initialized and self._engine is not None:
            await init_database(self._engine, create_tables=self._create_tables)
        self._initialized = True

        if start_worker:
            await self.worker.start()

        logger.info(
            "Event bus initialized",
            extra={
                "event_types": len(self.registry),
                "reliable": self.outbox is not None,
                "worker": bool(self._worker and self._worker.is_running),
            },
        )

    async def shutdown(self) -> None:
        """Stop the worker, drain in-flight handlers and release the engine."""
        if self._worker is not None:
            await self._worker.stop()

        cancelled = await self.emitter.drain()

        if self._engine is not None and self._owns_engine:
            await close_database(self._engine)
        self._initialized = False

        logger.info("Event bus shut down", extra={"cancelled_handlers": cancelled})

    def reset(self) -> None:
        """Remove every subscription and registered schema (mainly for testing)."""
        self.emitter.off_all()
        self.registry.clear()

    # ──────────────────────────────────────────────────────────────
    # Components
    # ──────────────────────────────────────────────────────────────

    @property
    def worker(self) -> OutboxWorker:
        if self._worker is None:
            raise ConfigurationError("The outbox worker requires an outbox store")
        return self._worker

    @property
    def dlq(self) -> DeadLetterManager:
        if self._dlq is None:
            raise ConfigurationError("The dead-letter queue requires an outbox store")
        return self._dlq

    @property
    def idempotency(self) -> IdempotencyGuard:
        if self._idempotency is None:
            raise ConfigurationError("Idempotency requires an idempotency store")
        return self._idempotency

    # ──────────────────────────────────────────────────────────────
    # Producer and consumer API
    # ──────────────────────────────────────────────────────────────

    def register_event_type(
        self,
        event_type: str | type[BaseModel],
        schema: type[BaseModel] | None = None,
    ) -> type[BaseModel]:
        return self.registry.register(event_type, schema)  # type: ignore[arg-type]

    async def emit(
        self,
        event_type: str,
        payload: Mapping[str, Any] | BaseModel,
        source: str | None = None,
    ) -> Event:
        return await self.emitter.emit(event_type, payload, source)

    async def emit_reliable(
        self,
        event_type: str,
        payload: Mapping[str, Any] | BaseModel,
        source: str | None = None,
    ) -> str:
        return await self.emitter.emit_reliable(event_type, payload, source)

    def on(self, event_type: str, handler: EventHandler) -> Unsubscribe:
        return self.emitter.on(event_type, handler)

    def on_all(self, handler: EventHandler) -> Unsubscribe:
        return self.emitter.on_all(handler)

    def once(self, event_type: str, handler: EventHandler) -> Unsubscribe:
        return self.emitter.once(event_type, handler)

    def on_idempotent(
        self,
        event_type: str,
        handler: EventHandler,
        *,
        key_fn: Callable[[Event], str] | None = None,
        scope_fn: Callable[[Event], str] | None = None,
        key_prefix: str = "",
        ttl: float | None = None,
        store_result: bool = True,
    ) -> Unsubscribe:
        """Subscribe ``handler`` wrapped so it applies at most once per key.

        Keyword arguments are passed to :func:`with_idempotency`.
        """
        wrapped: Callable[[Event], Awaitable[IdempotentOutcome[Any]]] = with_idempotency(
            self.idempotency,
            handler,
            key_fn=key_fn,
            scope_fn=scope_fn,
            key_prefix=key_prefix,
            ttl=ttl,
            store_result=store_result,
        )
        return self.emitter.on(event_type, wrapped)


__all__ = ["Bus"]
