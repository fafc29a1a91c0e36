"""Error tiers and in-handler retries for event handlers.

A handler's tier decides what happens when it raises:

    critical      re-raise; the outbox retries the event
    important     re-raise; the dispatch reports a failure
    non_critical  log a warning and return None
    monitoring    log at debug and return None

Usage:
    tracker = CascadeErrorTracker("tenant.deleted")

    cleanup = with_error_handling(
        revoke_api_keys,
        tier=ErrorTier.NON_CRITICAL,
        context="cleanup.api_keys",
        on_error=tracker.track,
    )
    emitter.on("tenant.deleted", cleanup)

    result = await with_event_retry(lambda: client.post(...), RETRY_PRESETS["standard"])
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import StrEnum
import functools
import inspect
import logging
import random
from typing import TYPE_CHECKING, Any, TypeVar

from eventbus_service.infra.metrics.events import handler_errors_total, handler_retries_total

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from eventbus_service.core.events.base import Event

T = TypeVar("T")

logger = logging.getLogger(__name__)


class ErrorTier(StrEnum):
    """How a wrapped handler reacts to its own failure."""

    CRITICAL = "critical"
    IMPORTANT = "important"
    NON_CRITICAL = "non_critical"
    MONITORING = "monitoring"

    @property
    def propagates(self) -> bool:
        return self in (ErrorTier.CRITICAL, ErrorTier.IMPORTANT)


def with_error_handling(
    handler: Callable[[Event], Awaitable[T] | T],
    *,
    tier: ErrorTier | str,
    context: str,
    on_error: Callable[[Exception, str], Any] | None = None,
) -> Callable[[Event], Awaitable[T | None]]:
    """Wrap an event handler with tiered error behaviour.

    Args:
        handler: Handler to wrap (sync or async)
        tier: Failure tier, see :class:`ErrorTier`
        context: Label for logs and the ``on_error`` callback, e.g. "billing.payment"
        on_error: Called with the error and ``context`` before the tier applies

    Returns:
        Async handler returning the wrapped handler's result, or None when a
        non-propagating tier swallowed an error
    """
    tier = ErrorTier(tier)

    @functools.wraps(handler)
    async def wrapper(event: Event) -> T | None:
        try:
            result = handler(event)
            if inspect.isawaitable(result):
                result = await result
            return result
        except Exception as exc:
            handler_errors_total.labels(tier=tier.value).inc()
            if on_error is not None:
                on_error(exc, context)

            extra = {"context": context, "tier": tier.value, "error": str(exc)}
            if tier.propagates:
                logger.error("Handler failed", extra=extra)
                raise
            if tier is ErrorTier.NON_CRITICAL:
                logger.warning("Non-critical handler failed, continuing", extra=extra)
            else:
                logger.debug("Monitoring handler failed", extra=extra)
            return None

    return wrapper


@dataclass
class CascadeErrorTracker:
    """Collects errors swallowed while one event fans out to many handlers.

    Pass :meth:`track` as ``on_error`` to :func:`with_error_handling` and
    read :attr:`errors` when building a completion event.
    """

    cascade: str
    errors: list[dict[str, str]] = field(default_factory=list)

    def track(self, error: Exception, context: str) -> None:
        self.errors.append({"context": context, "message": str(error)})
        logger.warning(
            "Cascade error tracked",
            extra={
                "cascade": self.cascade,
                "context": context,
                "error": str(error),
                "total_errors": len(self.errors),
            },
        )

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)

    def __len__(self) -> int:
        return len(self.errors)


@dataclass(frozen=True)
class RetryPolicy:
    """Retry schedule for transient failures inside a handler.

    Attributes:
        max_attempts: Total attempts, the first one included
        initial_delay: Seconds before the second attempt
        max_delay: Upper bound for the un-jittered delay
        backoff_multiplier: Growth factor between attempts
        jitter: Scale each delay by a random factor in [0.5, 1.5)
    """

    max_attempts: int = 3
    initial_delay: float = 0.1
    max_delay: float = 5.0
    backoff_multiplier: float = 2.0
    jitter: bool = True

    def delay_for(self, attempt: int) -> float:
        """Delay after the ``attempt``-th failure (1-based)."""
        delay = min(self.initial_delay * self.backoff_multiplier ** (attempt - 1), self.max_delay)
        if self.jitter:
            delay *= random.uniform(0.5, 1.5)
        return delay


RETRY_PRESETS: dict[str, RetryPolicy] = {
    # Cache and local database calls
    "quick": RetryPolicy(max_attempts=3, initial_delay=0.05, max_delay=0.5),
    # External APIs
    "standard": RetryPolicy(max_attempts=3, initial_delay=0.1, max_delay=2.0),
    "extended": RetryPolicy(max_attempts=5, initial_delay=0.2, max_delay=10.0),
}


async def with_event_retry(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy | None = None,
    *,
    is_retryable: Callable[[Exception], bool] | None = None,
    context: str = "retry",
) -> T:
    """Await ``fn()`` until it succeeds or the policy gives up.

    Meant for short transient failures inside one delivery; longer outages
    belong to the outbox retry schedule.

    Raises:
        Exception: The last error, unchanged, once attempts are exhausted or
            ``is_retryable`` rejects it
    """
    policy = policy or RetryPolicy()

    for attempt in range(1, policy.max_attempts + 1):
        try:
            result = await fn()
        except Exception as exc:
            retryable = is_retryable is None or is_retryable(exc)
            if attempt >= policy.max_attempts or not retryable:
                handler_retries_total.labels(context=context, outcome="exhausted").inc()
                logger.error(
                    "Retry attempts exhausted",
                    extra={
                        "context": context,
                        "attempts": attempt,
                        "max_attempts": policy.max_attempts,
                        "retryable": retryable,
                        "error": str(exc),
                    },
                )
                raise

            delay = policy.delay_for(attempt)
            handler_retries_total.labels(context=context, outcome="retried").inc()
            logger.debug(
                "Retrying after failure",
                extra={"context": context, "attempts": attempt, "delay": delay, "error": str(exc)},
            )
            await asyncio.sleep(delay)
        else:
            if attempt > 1:
                handler_retries_total.labels(context=context, outcome="recovered").inc()
            return result

    msg = "max_attempts must be at least 1"
    raise ValueError(msg)


__all__ = [
    "RETRY_PRESETS",
    "CascadeErrorTracker",
    "ErrorTier",
    "RetryPolicy",
    "with_error_handling",
    "with_event_retry",
]
