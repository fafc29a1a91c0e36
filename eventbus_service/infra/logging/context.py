"""Context management for structured logging.

Provides automatic context injection into log records using contextvars.
The emitter binds ``event_id``, ``event_type`` and the request scope while a
handler runs, so every log line a handler writes carries them without
explicit passing. Each asyncio task gets its own copy of the context.
"""

from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
import logging
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Iterator

_log_context: ContextVar[dict[str, Any]] = ContextVar("log_context", default={})


def set_log_context(**kwargs: Any) -> None:
    """Set logging context for the current async task.

    Args:
        **kwargs: Key-value pairs to add to logging context.
            Common examples: event_id, event_type, correlation_id, scope_id

    Example:
        ```python
        set_log_context(event_id="evt_0190...", event_type="user.created")
        logger.info("Sending welcome email")  # Includes event_id and event_type
        ```
    """
    current = _log_context.get().copy()
    current.update(kwargs)
    _log_context.set(current)


def get_log_context() -> dict[str, Any]:
    """Get a copy of the current logging context."""
    return _log_context.get().copy()


def clear_log_context() -> None:
    """Clear all logging context for the current async task."""
    _log_context.set({})


def remove_from_log_context(*keys: str) -> None:
    """Remove specific keys from logging context."""
    current = _log_context.get().copy()
    for key in keys:
        current.pop(key, None)
    _log_context.set(current)


@contextmanager
def log_context(**kwargs: Any) -> Iterator[None]:
    """Bind logging context for the duration of a block.

    The previous context is restored on exit, including on error.

    Example:
        ```python
        with log_context(outbox_id="42"):
            logger.info("Redelivering")  # Includes outbox_id
        ```
    """
    current = _log_context.get().copy()
    current.update({k: v for k, v in kwargs.items() if v is not None})
    token = _log_context.set(current)
    try:
        yield
    finally:
        _log_context.reset(token)


class ContextInjectingFilter(logging.Filter):
    """Logging filter that injects the contextvars-based context into LogRecord.

    Attached to the root QueueHandler, so records from every logger get the
    context of the task that emitted them. Existing record attributes (for
    example fields passed via ``extra=``) are never overwritten.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in _log_context.get().items():
            if not hasattr(record, key):
                setattr(record, key, value)
        return True


__all__ = [
    "ContextInjectingFilter",
    "clear_log_context",
    "get_log_context",
    "log_context",
    "remove_from_log_context",
    "set_log_context",
]
