"""Ambient request scope for event emission.

The host application (HTTP middleware, job runner, etc.) sets the request
scope once per unit of work; the emitter copies ``correlation_id``,
``scope_type`` and ``scope_id`` from it into every event's metadata.
"""

from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar, Token
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator


@dataclass(frozen=True)
class RequestScope:
    """Correlation and tenancy information of the current unit of work.

    Attributes:
        correlation_id: Request or trace id shared by related events
        scope_type: Kind of scope (e.g. "tenant", "user")
        scope_id: Identifier within that scope type
    """

    correlation_id: str | None = None
    scope_type: str | None = None
    scope_id: str | None = None


_request_scope: ContextVar[RequestScope | None] = ContextVar("request_scope", default=None)


def get_request_scope() -> RequestScope | None:
    """Get the request scope of the current task, if any."""
    return _request_scope.get()


def set_request_scope(scope: RequestScope) -> Token[RequestScope | None]:
    """Set the request scope for the current task.

    Returns:
        Token that restores the previous scope via :func:`reset_request_scope`.
    """
    return _request_scope.set(scope)


def reset_request_scope(token: Token[RequestScope | None]) -> None:
    """Restore the scope that was active before ``set_request_scope``."""
    _request_scope.reset(token)


def clear_request_scope() -> None:
    """Clear the request scope for the current task."""
    _request_scope.set(None)


@contextmanager
def request_scope(
    *,
    correlation_id: str | None = None,
    scope_type: str | None = None,
    scope_id: str | None = None,
) -> Iterator[RequestScope]:
    """Run a block with the given request scope.

    Example:
        with request_scope(correlation_id=request_id, scope_type="tenant", scope_id=tenant_id):
            await bus.emit("settings.updated", {...})
    """
    scope = RequestScope(
        correlation_id=correlation_id,
        scope_type=scope_type,
        scope_id=scope_id,
    )
    token = _request_scope.set(scope)
    try:
        yield scope
    finally:
        _request_scope.reset(token)


__all__ = [
    "RequestScope",
    "clear_request_scope",
    "get_request_scope",
    "request_scope",
    "reset_request_scope",
    "set_request_scope",
]
