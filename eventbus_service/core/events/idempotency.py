"""Idempotency guard for event handlers and other units of work.

A unit of work is identified by ``(scope_id, key)``. The first caller owns a
freshly inserted ``in_progress`` record; concurrent callers see
``in_progress`` and back off; later callers get the stored result.

Usage:
    guard = IdempotencyGuard(store)

    outcome = await guard.run(tenant_id, payment_id, lambda: charge(payment_id))
    if outcome.deduped:
        logger.info("Charge already applied")

    # Wrap an event handler (key defaults to the event id)
    bus.on("credits.grant_requested", with_idempotency(guard, grant_credits,
        key_fn=lambda event: event.payload["idempotency_key"]))
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import StrEnum
import functools
import inspect
import logging
from typing import TYPE_CHECKING, Any, Generic, Protocol, TypeVar

from pydantic_core import to_jsonable_python

from eventbus_service.core.exceptions import IdempotencyInProgressError
from eventbus_service.core.settings import IdempotencySettings, get_idempotency_settings
from eventbus_service.infra.metrics.events import idempotency_checks_total

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from eventbus_service.core.events.base import Event

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Scope used for events that carry no scope_id
GLOBAL_SCOPE = "global"

# Key prefix keeping leases apart from unit-of-work records
LEASE_PREFIX = "lease:"


class IdempotencyStatus(StrEnum):
    """Result of an idempotency check.

    NONE means no live record existed and the caller now owns a new
    in_progress record.
    """

    NONE = "none"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class IdempotencyCheck:
    """Outcome of an idempotency lookup.

    Attributes:
        status: Record state as seen by this caller
        result: Stored result when status is COMPLETED
        error: Stored error message when status is FAILED
        started_at: When the current attempt started
        expires_at: When the record stops counting
    """

    status: IdempotencyStatus
    result: Any = None
    error: str | None = None
    started_at: datetime | None = None
    expires_at: datetime | None = None

    @property
    def is_new(self) -> bool:
        return self.status is IdempotencyStatus.NONE


@dataclass(frozen=True)
class IdempotentOutcome(Generic[T]):
    """Result of a guarded unit of work.

    Attributes:
        result: Value produced now, or the stored value when deduped
        deduped: True if the work had already completed and was not re-run
    """

    result: T
    deduped: bool = False


@dataclass(frozen=True)
class IdempotencyLease:
    """A TTL-only lock.

    A lease has no release method; it ends when ``expires_at`` passes.
    """

    scope_id: str
    key: str
    acquired: bool
    expires_at: datetime | None

    def __bool__(self) -> bool:
        return self.acquired

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return True
        return (now or datetime.now(UTC)) >= self.expires_at


class IdempotencyStore(Protocol):
    """Protocol interface for idempotency record storage.

    At most one record may exist per ``(scope_id, key)``. Records whose
    ``expires_at`` has passed count as absent.
    """

    async def try_begin(
        self,
        scope_id: str,
        key: str,
        *,
        now: datetime,
        expires_at: datetime,
        stale_before: datetime | None = None,
        reclaim_failed: bool = False,
    ) -> IdempotencyCheck:
        """Atomically insert an in_progress record unless a live one exists.

        Args:
            scope_id: Scope of the key
            key: Idempotency key
            now: Current time, used for expiry
            expires_at: Expiry of the record if inserted
            stale_before: in_progress records started before this are reclaimed
            reclaim_failed: Take over a failed record instead of reporting it

        Returns:
            NONE if the caller now owns the record, otherwise the existing state
        """
        ...

    async def get(self, scope_id: str, key: str, *, now: datetime) -> IdempotencyCheck:
        ...

    async def complete(
        self, scope_id: str, key: str, result: Any, *, expires_at: datetime
    ) -> bool:
        ...

    async def fail(self, scope_id: str, key: str, error: str, *, expires_at: datetime) -> bool:
        ...

    async def clear(self, scope_id: str, key: str) -> bool:
        ...


class IdempotencyGuard:
    """Idempotency operations on top of an :class:`IdempotencyStore`.

    Args:
        store: Record storage
        settings: Record lifetimes (loaded from the environment if omitted)
    """

    def __init__(
        self,
        store: IdempotencyStore,
        settings: IdempotencySettings | None = None,
    ) -> None:
        self.store = store
        self.settings = settings or get_idempotency_settings()

    async def check_idempotency(self, scope_id: str, key: str) -> IdempotencyCheck:
        """Check a key, claiming it when no live record exists.

        Returns:
            NONE when the caller now owns a fresh in_progress record;
            IN_PROGRESS, COMPLETED (with result) or FAILED (with error) otherwise
        """
        check = await self._begin(scope_id, key)
        idempotency_checks_total.labels(status=check.status.value).inc()
        return check

    async def require_new(self, scope_id: str, key: str) -> IdempotencyCheck:
        """Like :meth:`check_idempotency`, raising when another attempt is running.

        Raises:
            IdempotencyInProgressError: If the key is in progress elsewhere
        """
        check = await self.check_idempotency(scope_id, key)
        if check.status is IdempotencyStatus.IN_PROGRESS:
            raise IdempotencyInProgressError(scope_id, key, check.started_at)
        return check

    async def complete_idempotency(
        self, scope_id: str, key: str, result: Any = None, *, ttl: float | None = None
    ) -> None:
        """Store ``result`` and mark the key completed."""
        stored = await self.store.complete(
            scope_id,
            key,
            to_jsonable_python(result),
            expires_at=self._expiry(self._ttl(ttl)),
        )
        if not stored:
            logger.warning(
                "No idempotency record to complete",
                extra={"scope_id": scope_id, "idempotency_key": key},
            )

    async def fail_idempotency(
        self, scope_id: str, key: str, error: str, *, ttl: float | None = None
    ) -> None:
        """Record ``error`` and mark the key failed."""
        stored = await self.store.fail(
            scope_id,
            key,
            error,
            expires_at=self._expiry(self._ttl(ttl)),
        )
        if not stored:
            logger.warning(
                "No idempotency record to fail",
                extra={"scope_id": scope_id, "idempotency_key": key},
            )

    async def clear_idempotency(self, scope_id: str, key: str) -> bool:
        """Delete the record so the key can be reused immediately."""
        return await self.store.clear(scope_id, key)

    async def get_idempotency_result(self, scope_id: str, key: str) -> Any | None:
        """Stored result of a completed key, or None."""
        check = await self.store.get(scope_id, key, now=datetime.now(UTC))
        if check.status is IdempotencyStatus.COMPLETED:
            return check.result
        return None

    async def acquire_lease(
        self,
        scope_id: str,
        key: str,
        ttl: float | None = None,
    ) -> IdempotencyLease:
        """Try to take a TTL-only lease on ``key``.

        Args:
            scope_id: Scope of the key
            key: Lease name
            ttl: Lease lifetime in seconds (``lease_ttl`` setting if None)

        Returns:
            Lease with ``acquired`` False when another holder's lease is live
        """
        lease_key = f"{LEASE_PREFIX}{key}"
        now = datetime.now(UTC)
        expires_at = now + timedelta(seconds=ttl if ttl is not None else self.settings.lease_ttl)
        check = await self.store.try_begin(scope_id, lease_key, now=now, expires_at=expires_at)
        if check.is_new:
            return IdempotencyLease(scope_id, key, acquired=True, expires_at=expires_at)
        logger.debug(
            "Lease held elsewhere",
            extra={"scope_id": scope_id, "lease": key, "expires_at": check.expires_at},
        )
        return IdempotencyLease(scope_id, key, acquired=False, expires_at=check.expires_at)

    async def run(
        self,
        scope_id: str,
        key: str,
        work: Callable[[], Awaitable[T]],
        *,
        ttl: float | None = None,
        store_result: bool = True,
    ) -> IdempotentOutcome[T]:
        """Run ``work`` at most once per key.

        A completed key returns the stored result with ``deduped=True``; a
        failed key is retried. With ``store_result`` False the key is still
        recorded but duplicates get None back.

        Raises:
            IdempotencyInProgressError: If the key is in progress elsewhere
            Exception: Whatever ``work`` raised (the key is marked failed)
        """
        check = await self._begin(scope_id, key, reclaim_failed=True, ttl=ttl)
        idempotency_checks_total.labels(status=check.status.value).inc()

        if check.status is IdempotencyStatus.COMPLETED:
            logger.debug(
                "Skipping duplicate operation",
                extra={"scope_id": scope_id, "idempotency_key": key},
            )
            return IdempotentOutcome(check.result, deduped=True)
        if check.status is IdempotencyStatus.IN_PROGRESS:
            raise IdempotencyInProgressError(scope_id, key, check.started_at)

        try:
            result = await work()
        except Exception as exc:
            await self.fail_idempotency(scope_id, key, str(exc) or type(exc).__name__, ttl=ttl)
            raise

        await self.complete_idempotency(scope_id, key, result if store_result else None, ttl=ttl)
        return IdempotentOutcome(result, deduped=False)

    async def _begin(
        self,
        scope_id: str,
        key: str,
        *,
        reclaim_failed: bool = False,
        ttl: float | None = None,
    ) -> IdempotencyCheck:
        now = datetime.now(UTC)
        return await self.store.try_begin(
            scope_id,
            key,
            now=now,
            expires_at=now + timedelta(seconds=self._ttl(ttl)),
            stale_before=now - timedelta(seconds=self.settings.in_progress_timeout),
            reclaim_failed=reclaim_failed,
        )

    def _ttl(self, ttl: float | None) -> float:
        return self.settings.ttl if ttl is None else ttl

    @staticmethod
    def _expiry(seconds: float) -> datetime:
        return datetime.now(UTC) + timedelta(seconds=seconds)


def _default_scope(event: Event) -> str:
    return event.meta.scope_id or GLOBAL_SCOPE


def _default_key(event: Event) -> str:
    return event.meta.event_id


def with_idempotency(
    guard: IdempotencyGuard,
    handler: Callable[[Event], Awaitable[T] | T],
    *,
    key_fn: Callable[[Event], str] | None = None,
    scope_fn: Callable[[Event], str] | None = None,
    key_prefix: str = "",
    ttl: float | None = None,
    store_result: bool = True,
) -> Callable[[Event], Awaitable[IdempotentOutcome[T]]]:
    """Wrap an event handler so it runs at most once per key.

    Args:
        guard: Idempotency guard to record attempts with
        handler: Handler to wrap
        key_fn: Derives the key from the event (defaults to the event id)
        scope_fn: Derives the scope (defaults to ``meta.scope_id`` or "global")
        key_prefix: Prepended to every derived key, e.g. "billing:"
        ttl: Seconds a completed or failed key is remembered (``ttl`` setting if None)
        store_result: Keep the handler's return value for duplicates to read

    Returns:
        Handler returning :class:`IdempotentOutcome`. An in-progress duplicate
        raises :class:`IdempotencyInProgressError` so the outbox retries it.
    """
    get_key = key_fn or _default_key
    get_scope = scope_fn or _default_scope

    @functools.wraps(handler)
    async def wrapper(event: Event) -> IdempotentOutcome[T]:
        async def work() -> T:
            result = handler(event)
            if inspect.isawaitable(result):
                result = await result
            return result

        key = f"{key_prefix}{get_key(event)}"
        outcome = await guard.run(
            get_scope(event), key, work, ttl=ttl, store_result=store_result
        )
        if outcome.deduped:
            logger.info(
                "Duplicate event skipped",
                extra={"event_id": event.event_id, "event_type": event.type},
            )
        return outcome

    return wrapper


__all__ = [
    "GLOBAL_SCOPE",
    "LEASE_PREFIX",
    "IdempotencyCheck",
    "IdempotencyGuard",
    "IdempotencyLease",
    "IdempotencyStatus",
    "IdempotencyStore",
    "IdempotentOutcome",
    "with_idempotency",
]
