"""Background outbox worker for reliable event delivery.

The worker runs as a background task that:
1. Claims due entries from the outbox store
2. Redelivers each event to the in-process handlers through the emitter
3. Marks entries completed, schedules a retry, or dead-letters them

The worker relies on:
- Atomic per-entry claims, so several replicas can poll the same store
- Exponential backoff with jitter for failed deliveries
- A bounded retry budget, after which entries land in the DLQ
- Graceful shutdown that lets the in-flight batch finish
"""

from __future__ import annotations

import asyncio
import contextlib
from datetime import UTC, datetime
import inspect
import logging
import time
from typing import TYPE_CHECKING, Any

from eventbus_service.core.events.outbox import OutboxStatus
from eventbus_service.core.settings import OutboxSettings, get_outbox_settings
from eventbus_service.infra.events.outbox.backoff import next_retry_at
from eventbus_service.infra.logging.context import log_context
from eventbus_service.infra.metrics.events import (
    outbox_poll_errors_total,
    record_delivery,
    record_outbox_depth,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from eventbus_service.core.events.emitter import EventEmitter
    from eventbus_service.core.events.outbox import OutboxEntry, OutboxStore

    PermanentFailureHook = Callable[[OutboxEntry, BaseException], Awaitable[Any] | Any]

logger = logging.getLogger(__name__)


class OutboxWorker:
    """Polls the outbox and redelivers events until they succeed or die.

    Attributes:
        store: Outbox store to claim from
        emitter: Emitter whose handlers receive redelivered events
        settings: Polling and retry configuration

    Args:
        store: Outbox store to claim from
        emitter: Emitter whose handlers receive redelivered events
        settings: Polling and retry configuration (loaded from the environment if omitted)
        on_permanent_failure: Called once with the entry and the last error
            when an entry is dead-lettered. Errors raised by the hook are logged.
    """

    def __init__(
        self,
        store: OutboxStore,
        emitter: EventEmitter,
        *,
        settings: OutboxSettings | None = None,
        on_permanent_failure: PermanentFailureHook | None = None,
    ) -> None:
        self.store = store
        self.emitter = emitter
        self.settings = settings or get_outbox_settings()
        self.on_permanent_failure = on_permanent_failure

        self._running = False
        self._task: asyncio.Task[None] | None = None
        self._stop_event = asyncio.Event()
        self._metrics_refreshed_at: float | None = None

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the background polling loop (no-op if already running)."""
        if self._running:
            logger.debug("Outbox worker already running")
            return

        self._running = True
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop(), name="outbox-worker")
        logger.info(
            "Outbox worker started",
            extra={
                "batch_size": self.settings.batch_size,
                "poll_interval": self.settings.poll_interval,
                "max_retries": self.settings.max_retries,
            },
        )

    async def stop(self) -> None:
        """Stop the background loop gracefully.

        No new polls start; the in-flight batch is given ``shutdown_timeout``
        seconds to finish before the loop is cancelled.
        """
        if not self._running:
            return

        self._running = False
        self._stop_event.set()

        if self._task:
            try:
                await asyncio.wait_for(
                    asyncio.shield(self._task), timeout=self.settings.shutdown_timeout
                )
            except TimeoutError:
                logger.warning("Outbox worker shutdown timed out, cancelling")
                self._task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await self._task
            self._task = None

        logger.info("Outbox worker stopped")

    async def _run_loop(self) -> None:
        """Main processing loop."""
        while self._running:
            try:
                processed = await self.process_batch()
                await self._refresh_metrics_if_due()
            except asyncio.CancelledError:
                logger.info("Outbox worker loop cancelled")
                raise
            except Exception:
                outbox_poll_errors_total.inc()
                logger.exception("Error in outbox worker loop")
                await self._sleep(self.settings.poll_interval * self.settings.error_backoff_multiplier)
                continue

            if processed >= self.settings.batch_size:
                # More entries are probably due; yield and poll again
                await asyncio.sleep(0)
            else:
                await self._sleep(self.settings.poll_interval)

    async def _refresh_metrics_if_due(self) -> None:
        now = time.monotonic()
        last = self._metrics_refreshed_at
        if last is not None and now - last < self.settings.metrics_interval:
            return
        self._metrics_refreshed_at = now
        await self.refresh_metrics()

    async def _sleep(self, seconds: float) -> None:
        # Wakes early when stop() is called
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)

    async def process_batch(self) -> int:
        """Claim and deliver one batch.

        Returns:
            Number of entries claimed in this batch
        """
        entries = await self.store.claim_batch(datetime.now(UTC), self.settings.batch_size)
        if not entries:
            return 0

        logger.debug("Processing outbox batch", extra={"batch_size": len(entries)})

        delivered = 0
        for entry in entries:
            if await self._deliver(entry):
                delivered += 1

        logger.info(
            "Outbox batch processed",
            extra={"delivered": delivered, "total": len(entries)},
        )
        return len(entries)

    async def _deliver(self, entry: OutboxEntry) -> bool:
        assert entry.id is not None

        with log_context(outbox_id=entry.id, attempts=entry.attempts):
            try:
                await self.emitter.redeliver(entry.event)
            except Exception as exc:
                await self._handle_failure(entry, exc)
                return False

            await self.store.mark_completed(entry.id)
            record_delivery(entry.event_type, "delivered")
            logger.debug(
                "Event delivered",
                extra={"event_id": entry.event_id, "event_type": entry.event_type},
            )
            return True

    async def _handle_failure(self, entry: OutboxEntry, exc: Exception) -> None:
        assert entry.id is not None
        error = str(exc) or type(exc).__name__

        if entry.attempts >= self.settings.max_retries:
            await self.store.mark_failed(entry.id, error)
            record_delivery(entry.event_type, "dead_lettered")
            logger.error(
                "Delivery failed permanently, moved to dead-letter queue",
                extra={
                    "event_id": entry.event_id,
                    "event_type": entry.event_type,
                    "error": error,
                },
            )
            await self._notify_permanent_failure(entry, exc)
            return

        # Scheduled from the time the failure was observed
        retry_at, delay = next_retry_at(entry.attempts, self.settings, datetime.now(UTC))
        await self.store.mark_retry(entry.id, error, retry_at)
        record_delivery(entry.event_type, "retried", retry_delay=delay)
        logger.warning(
            "Delivery failed, scheduled for retry",
            extra={
                "event_id": entry.event_id,
                "event_type": entry.event_type,
                "error": error,
                "retry_in": round(delay, 3),
            },
        )

    async def _notify_permanent_failure(self, entry: OutboxEntry, exc: Exception) -> None:
        if self.on_permanent_failure is None:
            return
        try:
            result = self.on_permanent_failure(entry, exc)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception(
                "Permanent failure hook raised",
                extra={"event_id": entry.event_id, "event_type": entry.event_type},
            )

    async def retry_failed(self, event_id: str) -> bool:
        """Requeue the dead-lettered entry for ``event_id`` with a fresh budget.

        Returns:
            True if a failed entry was requeued
        """
        requeued = await self.store.retry_failed_by_event_id(event_id)
        if requeued:
            logger.info("Requeued failed event", extra={"event_id": event_id})
        return requeued

    async def get_failed_count(self) -> int:
        counts = await self.store.count_by_status()
        return counts.get(OutboxStatus.FAILED, 0)

    async def refresh_metrics(self) -> dict[OutboxStatus, int]:
        """Publish outbox depth gauges and return the counts."""
        counts = await self.store.count_by_status()
        record_outbox_depth({status.value: count for status, count in counts.items()})
        return counts


__all__ = ["OutboxWorker"]
