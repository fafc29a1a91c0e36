"""Schema-validated event emitter.

The emitter validates payloads against the schema registry, builds event
envelopes and either fans them out to in-process handlers (``emit``) or
writes them to the outbox for the worker to deliver (``emit_reliable``).

Handlers run concurrently as asyncio tasks bounded by a shared semaphore.
Handlers dispatched from inside another handler (nested emits) inherit the
outer slot instead of waiting for a new one.
The handler set is snapshotted before any handler runs, so subscribing or
unsubscribing during a dispatch only affects later emits.

Usage:
    emitter = EventEmitter(registry, outbox=store)

    async def send_welcome(event: Event) -> None:
        ...

    unsubscribe = emitter.on("user.created", send_welcome)
    await emitter.emit("user.created", {"user_id": "123", "email": "a@b.c"})
    event_id = await emitter.emit_reliable("user.created", {...})
    unsubscribe()
"""

from __future__ import annotations

import asyncio
from contextvars import ContextVar
from dataclasses import dataclass, field
import inspect
import logging
import time
from typing import TYPE_CHECKING, Any

from eventbus_service.core.events.base import Event, EventMeta
from eventbus_service.core.events.context import get_request_scope
from eventbus_service.core.events.outbox import OutboxEntry
from eventbus_service.core.exceptions import (
    ConfigurationError,
    DeliveryError,
    HandlerError,
    HandlerLimitExceededError,
)
from eventbus_service.core.settings import EventSettings, get_event_settings
from eventbus_service.infra.logging.context import log_context
from eventbus_service.infra.metrics.events import (
    record_emitted,
    record_handler_result,
    set_handler_count,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Mapping

    from pydantic import BaseModel

    from eventbus_service.core.events.outbox import OutboxStore
    from eventbus_service.core.events.registry import SchemaRegistry

    EventHandler = Callable[[Event], Awaitable[Any] | Any]
    Unsubscribe = Callable[[], None]

logger = logging.getLogger(__name__)

# Label used for handlers subscribed to every event type
ALL_EVENTS = "*"

# Set inside a handler slot; dispatches started from a handler run without
# taking another slot, so nested emits cannot starve on the outer ones
_handler_slot: ContextVar[bool] = ContextVar("eventbus_handler_slot", default=False)


@dataclass(frozen=True)
class HandlerStats:
    """Snapshot of handler registrations.

    Attributes:
        total: Handlers across all types, global handlers included
        global_handlers: Handlers subscribed to every event type
        by_type: Handler count per event type
        max_per_type: Configured per-type limit
        leak_risk_types: Types at or above the leak warning threshold
    """

    total: int
    global_handlers: int
    by_type: dict[str, int] = field(default_factory=dict)
    max_per_type: int = 0
    leak_risk_types: list[str] = field(default_factory=list)

    @property
    def has_leak_risk(self) -> bool:
        return bool(self.leak_risk_types)


def _handler_name(handler: Any) -> str:
    return getattr(handler, "__qualname__", None) or getattr(
        handler, "__name__", type(handler).__name__
    )


class EventEmitter:
    """Validates, builds and dispatches events.

    Args:
        registry: Schema registry used to validate every payload
        outbox: Outbox store for ``emit_reliable`` (optional)
        settings: Emitter settings (loaded from the environment if omitted)
    """

    def __init__(
        self,
        registry: SchemaRegistry,
        *,
        outbox: OutboxStore | None = None,
        settings: EventSettings | None = None,
    ) -> None:
        self.registry = registry
        self.outbox = outbox
        self.settings = settings or get_event_settings()

        # Insertion-ordered sets: dict keys with no values
        self._handlers: dict[str, dict[EventHandler, None]] = {}
        self._global_handlers: dict[EventHandler, None] = {}
        self._semaphore = asyncio.Semaphore(self.settings.handler_concurrency)
        self._inflight: set[asyncio.Task[HandlerError | None]] = set()

    # ──────────────────────────────────────────────────────────────
    # Producer API
    # ──────────────────────────────────────────────────────────────

    def build_event(
        self,
        event_type: str,
        payload: Mapping[str, Any] | BaseModel,
        source: str | None = None,
    ) -> Event:
        """Validate ``payload`` and wrap it in a fresh envelope.

        Raises:
            UnregisteredEventError: If ``event_type`` has no schema
            EventValidationError: If the payload does not satisfy the schema
        """
        data = self.registry.validate(event_type, payload)
        scope = get_request_scope()
        meta = EventMeta(
            schema_version=self.registry.schema_version(event_type) or 1,
            source=source or self.settings.default_source,
            correlation_id=scope.correlation_id if scope else None,
            scope_type=scope.scope_type if scope else None,
            scope_id=scope.scope_id if scope else None,
        )
        return Event(type=event_type, payload=data, meta=meta)

    async def emit(
        self,
        event_type: str,
        payload: Mapping[str, Any] | BaseModel,
        source: str | None = None,
    ) -> Event:
        """Validate and dispatch an event to in-process handlers.

        Handler failures are logged and counted but never raised; ``emit``
        does not retry and does not persist.

        Returns:
            The dispatched event

        Raises:
            UnregisteredEventError: If ``event_type`` has no schema
            EventValidationError: If the payload does not satisfy the schema
        """
        event = self.build_event(event_type, payload, source)
        record_emitted(event_type)
        await self._dispatch(event, self._snapshot(event_type))
        return event

    async def emit_reliable(
        self,
        event_type: str,
        payload: Mapping[str, Any] | BaseModel,
        source: str | None = None,
    ) -> str:
        """Validate an event and write it to the outbox for delivery.

        Returns only after the store reports the entry as durable.

        Returns:
            The event id

        Raises:
            ConfigurationError: If no outbox store is configured
            UnregisteredEventError: If ``event_type`` has no schema
            EventValidationError: If the payload does not satisfy the schema
        """
        if self.outbox is None:
            raise ConfigurationError(
                "emit_reliable requires an outbox store",
                extra={"event_type": event_type},
            )

        event = self.build_event(event_type, payload, source)
        entry = await self.outbox.insert(OutboxEntry.pending(event))
        record_emitted(event_type, reliable=True)
        logger.debug(
            "Event written to outbox",
            extra={"event_id": event.event_id, "event_type": event_type, "outbox_id": entry.id},
        )
        return event.event_id

    async def redeliver(self, event: Event) -> None:
        """Dispatch an existing envelope, raising if any handler fails.

        Used by the outbox worker; the event keeps its original metadata.

        Raises:
            DeliveryError: If one or more handlers raised
        """
        failures = await self._dispatch(event, self._snapshot(event.type))
        if failures:
            raise DeliveryError(event.type, event.event_id, failures)

    # ──────────────────────────────────────────────────────────────
    # Consumer API
    # ──────────────────────────────────────────────────────────────

    def on(self, event_type: str, handler: EventHandler) -> Unsubscribe:
        """Subscribe ``handler`` to ``event_type``.

        Returns:
            Callable that removes this subscription

        Raises:
            HandlerLimitExceededError: In strict mode, when the type already
                has ``max_handlers_per_type`` handlers
        """
        handlers = self._handlers.setdefault(event_type, {})
        self._check_limit(event_type, len(handlers))
        handlers[handler] = None
        set_handler_count(event_type, len(handlers))

        def unsubscribe() -> None:
            current = self._handlers.get(event_type)
            if current is not None and handler in current:
                del current[handler]
                set_handler_count(event_type, len(current))

        return unsubscribe

    def on_all(self, handler: EventHandler) -> Unsubscribe:
        """Subscribe ``handler`` to every event type."""
        self._check_limit(ALL_EVENTS, len(self._global_handlers))
        self._global_handlers[handler] = None
        set_handler_count(ALL_EVENTS, len(self._global_handlers))

        def unsubscribe() -> None:
            if handler in self._global_handlers:
                del self._global_handlers[handler]
                set_handler_count(ALL_EVENTS, len(self._global_handlers))

        return unsubscribe

    def once(self, event_type: str, handler: EventHandler) -> Unsubscribe:
        """Subscribe ``handler`` for a single invocation.

        The subscription is removed before the handler runs, so it fires at
        most once even when several emits dispatch concurrently.
        """
        fired = False

        async def _once(event: Event) -> Any:
            nonlocal fired
            if fired:
                return None
            fired = True
            unsubscribe()
            result = handler(event)
            if inspect.isawaitable(result):
                result = await result
            return result

        _once.__qualname__ = f"once({_handler_name(handler)})"
        unsubscribe = self.on(event_type, _once)
        return unsubscribe

    def off(self, event_type: str) -> None:
        """Remove every handler of ``event_type``."""
        if self._handlers.pop(event_type, None) is not None:
            set_handler_count(event_type, 0)

    def off_all(self) -> None:
        """Remove every handler, global handlers included."""
        for event_type in self._handlers:
            set_handler_count(event_type, 0)
        self._handlers.clear()
        self._global_handlers.clear()
        set_handler_count(ALL_EVENTS, 0)

    # ──────────────────────────────────────────────────────────────
    # Introspection
    # ──────────────────────────────────────────────────────────────

    def handler_count(self, event_type: str | None = None) -> int:
        """Handlers for ``event_type``, or for all types when None."""
        if event_type is None:
            return sum(len(h) for h in self._handlers.values()) + len(self._global_handlers)
        return len(self._handlers.get(event_type, ()))

    def registered_types(self) -> list[str]:
        """Event types with at least one handler."""
        return [event_type for event_type, handlers in self._handlers.items() if handlers]

    def get_handler_stats(self) -> HandlerStats:
        limit = self.settings.max_handlers_per_type
        threshold = limit * self.settings.leak_warning_ratio
        by_type = {t: len(h) for t, h in self._handlers.items() if h}
        leak_risk = [t for t, count in by_type.items() if count >= threshold]
        if len(self._global_handlers) >= threshold:
            leak_risk.append(ALL_EVENTS)
        return HandlerStats(
            total=sum(by_type.values()) + len(self._global_handlers),
            global_handlers=len(self._global_handlers),
            by_type=by_type,
            max_per_type=limit,
            leak_risk_types=leak_risk,
        )

    def has_handler_leak_risk(self) -> bool:
        return self.get_handler_stats().has_leak_risk

    @property
    def inflight_count(self) -> int:
        return len(self._inflight)

    async def drain(self, timeout: float | None = None) -> int:
        """Wait for in-flight handlers, cancelling those still running at the deadline.

        Args:
            timeout: Seconds to wait (``drain_timeout`` setting if None)

        Returns:
            Number of handler tasks that had to be cancelled
        """
        if not self._inflight:
            return 0
        wait_for = self.settings.drain_timeout if timeout is None else timeout
        _, pending = await asyncio.wait(set(self._inflight), timeout=wait_for)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning(
                "Cancelled in-flight event handlers on drain",
                extra={"cancelled": len(pending), "timeout": wait_for},
            )
        return len(pending)

    # ──────────────────────────────────────────────────────────────
    # Dispatch
    # ──────────────────────────────────────────────────────────────

    def _snapshot(self, event_type: str) -> list[EventHandler]:
        handlers = list(self._handlers.get(event_type, ()))
        handlers.extend(h for h in self._global_handlers if h not in handlers)
        return handlers

    def _check_limit(self, event_type: str, current: int) -> None:
        limit = self.settings.max_handlers_per_type
        if current < limit:
            return
        if self.settings.strict_handler_limit:
            raise HandlerLimitExceededError(event_type, limit)
        logger.warning(
            "Handler limit exceeded, possible subscription leak",
            extra={"event_type": event_type, "handlers": current + 1, "limit": limit},
        )

    async def _dispatch(self, event: Event, handlers: list[EventHandler]) -> list[HandlerError]:
        if not handlers:
            return []

        tasks = []
        for handler in handlers:
            task = asyncio.create_task(
                self._invoke(handler, event),
                name=f"event-handler:{event.type}:{_handler_name(handler)}",
            )
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)
            tasks.append(task)

        results = await asyncio.gather(*tasks)
        return [result for result in results if result is not None]

    async def _invoke(self, handler: EventHandler, event: Event) -> HandlerError | None:
        if _handler_slot.get():
            return await self._run_handler(handler, event)

        async with self._semaphore:
            token = _handler_slot.set(True)
            try:
                return await self._run_handler(handler, event)
            finally:
                _handler_slot.reset(token)

    async def _run_handler(self, handler: EventHandler, event: Event) -> HandlerError | None:
        name = _handler_name(handler)
        with log_context(
            event_id=event.event_id,
            event_type=event.type,
            correlation_id=event.meta.correlation_id,
            scope_id=event.meta.scope_id,
        ):
            start = time.perf_counter()
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                record_handler_result(
                    event.type, success=False, duration=time.perf_counter() - start
                )
                logger.exception(
                    "Event handler failed",
                    extra={"handler": name, "error_type": type(exc).__name__},
                )
                return HandlerError(event.type, name, exc)

            record_handler_result(event.type, success=True, duration=time.perf_counter() - start)
            return None


__all__ = ["ALL_EVENTS", "EventEmitter", "HandlerStats"]
