"""Domain event bus with schema validation and outbox delivery.

Usage:
    from eventbus_service.core.events import EventPayload, SchemaRegistry, EventEmitter

    registry = SchemaRegistry()

    @registry.event("tenant.created")
    class TenantCreated(EventPayload):
        tenant_id: str
        name: str

    emitter = EventEmitter(registry)
    emitter.on("tenant.created", send_welcome_email)
    await emitter.emit("tenant.created", {"tenant_id": "t-1", "name": "Acme"})
"""

from eventbus_service.core.events.base import (
    EVENT_ID_PREFIX,
    Event,
    EventMeta,
    EventPayload,
    generate_event_id,
)
from eventbus_service.core.events.context import (
    RequestScope,
    clear_request_scope,
    get_request_scope,
    request_scope,
    reset_request_scope,
    set_request_scope,
)
from eventbus_service.core.events.emitter import ALL_EVENTS, EventEmitter, HandlerStats
from eventbus_service.core.events.handling import (
    RETRY_PRESETS,
    CascadeErrorTracker,
    ErrorTier,
    RetryPolicy,
    with_error_handling,
    with_event_retry,
)
from eventbus_service.core.events.idempotency import (
    GLOBAL_SCOPE,
    IdempotencyCheck,
    IdempotencyGuard,
    IdempotencyLease,
    IdempotencyStatus,
    IdempotencyStore,
    IdempotentOutcome,
    with_idempotency,
)
from eventbus_service.core.events.outbox import (
    DeadLetterFilter,
    DeadLetterPage,
    DeadLetterStats,
    OutboxEntry,
    OutboxStatus,
    OutboxStore,
)
from eventbus_service.core.events.registry import SchemaRegistry

__all__ = [
    "ALL_EVENTS",
    "EVENT_ID_PREFIX",
    "GLOBAL_SCOPE",
    "RETRY_PRESETS",
    "CascadeErrorTracker",
    "DeadLetterFilter",
    "DeadLetterPage",
    "DeadLetterStats",
    "Event",
    "EventEmitter",
    "EventMeta",
    "ErrorTier",
    "EventPayload",
    "HandlerStats",
    "IdempotencyCheck",
    "IdempotencyGuard",
    "IdempotencyLease",
    "IdempotencyStatus",
    "IdempotencyStore",
    "IdempotentOutcome",
    "OutboxEntry",
    "OutboxStatus",
    "OutboxStore",
    "RequestScope",
    "RetryPolicy",
    "SchemaRegistry",
    "clear_request_scope",
    "generate_event_id",
    "get_request_scope",
    "request_scope",
    "reset_request_scope",
    "set_request_scope",
    "with_error_handling",
    "with_event_retry",
    "with_idempotency",
]
