"""Exception classes for the event bus."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from datetime import datetime


class EventBusError(Exception):
    """Base event bus exception.

    All event bus exceptions inherit from this class so callers can catch
    the whole family at once.

    Attributes:
        detail: Human-readable error message.
        type: Error type identifier (stable, machine-readable).
        extra: Additional context-specific information about the error.

    Example:
            raise EventBusError(
            detail="Outbox store unavailable",
            type="outbox-unavailable",
            extra={"event_type": "user.created"},
        )
    """

    def __init__(
        self,
        detail: str,
        type: str = "event-bus-error",
        extra: dict[str, Any] | None = None,
    ) -> None:
        """Initialize event bus exception.

        Args:
            detail: Human-readable error message.
            type: Error type identifier.
            extra: Additional context about the error.
        """
        self.detail = detail
        self.type = type
        self.extra = extra or {}
        super().__init__(detail)


class UnregisteredEventError(EventBusError):
    """Raised when emitting an event type that has no registered schema."""

    def __init__(self, event_type: str) -> None:
        self.event_type = event_type
        super().__init__(
            detail=f"Event type '{event_type}' is not registered",
            type="unregistered-event",
            extra={"event_type": event_type},
        )


class EventValidationError(EventBusError):
    """Raised when a payload does not satisfy its event schema.

    Attributes:
        event_type: Type of the rejected event.
        errors: Structured diagnostics, one dict per failing field
            (pydantic ``ValidationError.errors()`` format).
    """

    def __init__(self, event_type: str, errors: list[dict[str, Any]]) -> None:
        self.event_type = event_type
        self.errors = errors
        fields = ", ".join(".".join(str(part) for part in err.get("loc", ())) for err in errors)
        super().__init__(
            detail=f"Invalid payload for event '{event_type}': {fields or 'payload'}",
            type="event-validation-failed",
            extra={"event_type": event_type, "errors": errors},
        )


class ConfigurationError(EventBusError):
    """Raised when a component is used without a required collaborator."""

    def __init__(self, detail: str, extra: dict[str, Any] | None = None) -> None:
        super().__init__(detail=detail, type="configuration-error", extra=extra)


class HandlerError(EventBusError):
    """A single handler failure during fan-out.

    Handler errors are contained: ``emit`` logs and counts them, the outbox
    worker aggregates them into a :class:`DeliveryError`.
    """

    def __init__(self, event_type: str, handler_name: str, cause: BaseException) -> None:
        self.event_type = event_type
        self.handler_name = handler_name
        self.cause = cause
        super().__init__(
            detail=f"Handler '{handler_name}' failed for '{event_type}': {cause}",
            type="handler-failed",
            extra={
                "event_type": event_type,
                "handler": handler_name,
                "error_type": type(cause).__name__,
            },
        )


class HandlerLimitExceededError(EventBusError):
    """Raised in strict mode when too many handlers subscribe to one type."""

    def __init__(self, event_type: str, limit: int) -> None:
        self.event_type = event_type
        self.limit = limit
        super().__init__(
            detail=f"Handler limit of {limit} reached for event '{event_type}'",
            type="handler-limit-exceeded",
            extra={"event_type": event_type, "limit": limit},
        )


class DeliveryError(EventBusError):
    """Raised when one or more handlers failed while redelivering an event.

    Attributes:
        event_id: Identifier of the redelivered event.
        failures: Handler errors collected during the fan-out.
    """

    def __init__(self, event_type: str, event_id: str, failures: list[HandlerError]) -> None:
        self.event_type = event_type
        self.event_id = event_id
        self.failures = failures
        summary = "; ".join(f"{f.handler_name}: {f.cause}" for f in failures)
        super().__init__(
            detail=f"{len(failures)} handler(s) failed for '{event_type}': {summary}",
            type="delivery-failed",
            extra={
                "event_type": event_type,
                "event_id": event_id,
                "handlers": [f.handler_name for f in failures],
            },
        )


class IdempotencyInProgressError(EventBusError):
    """Raised when the same idempotency key is already being processed.

    This is a signal, not a failure: the caller should retry later.
    """

    def __init__(self, scope_id: str, key: str, started_at: datetime | None = None) -> None:
        self.scope_id = scope_id
        self.key = key
        self.started_at = started_at
        super().__init__(
            detail=f"Operation '{key}' is already in progress for scope '{scope_id}'",
            type="idempotency-in-progress",
            extra={
                "scope_id": scope_id,
                "key": key,
                "started_at": started_at.isoformat() if started_at else None,
            },
        )


class InvalidCursorError(EventBusError):
    """Raised when a pagination cursor cannot be decoded."""

    def __init__(self, detail: str = "Invalid cursor") -> None:
        super().__init__(detail=detail, type="invalid-cursor")


class DLQBatchTooLargeError(EventBusError):
    """Raised when a DLQ batch operation exceeds the allowed batch size."""

    def __init__(self, size: int, limit: int) -> None:
        self.size = size
        self.limit = limit
        super().__init__(
            detail=f"Batch of {size} ids exceeds the maximum of {limit}",
            type="dlq-batch-too-large",
            extra={"size": size, "limit": limit},
        )


__all__ = [
    "ConfigurationError",
    "DLQBatchTooLargeError",
    "DeliveryError",
    "EventBusError",
    "EventValidationError",
    "HandlerError",
    "HandlerLimitExceededError",
    "IdempotencyInProgressError",
    "InvalidCursorError",
    "UnregisteredEventError",
]
