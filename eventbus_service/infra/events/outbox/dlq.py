"""Dead-letter queue administration.

Dead-lettered entries are ``failed`` outbox rows. This module lists them
with seek pagination, and requeues or purges them one at a time or in
capped batches.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import TYPE_CHECKING

from eventbus_service.core.events.outbox import DeadLetterFilter, DeadLetterPage, OutboxStatus
from eventbus_service.core.exceptions import DLQBatchTooLargeError
from eventbus_service.core.pagination import decode_seek_cursor, encode_seek_cursor
from eventbus_service.infra.metrics.events import dlq_purged_total, dlq_requeued_total

if TYPE_CHECKING:
    from collections.abc import Sequence

    from eventbus_service.core.events.outbox import DeadLetterStats, OutboxEntry, OutboxStore

logger = logging.getLogger(__name__)

MAX_BATCH_SIZE = 1000
DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


@dataclass(frozen=True)
class BatchResult:
    """Outcome of a batch retry or purge.

    Attributes:
        succeeded: Ids that were requeued or purged
        failed: One ``{"id", "error"}`` item per id that was not
    """

    succeeded: list[str] = field(default_factory=list)
    failed: list[dict[str, str]] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.succeeded) + len(self.failed)


def _clamp_limit(limit: int) -> int:
    return max(1, min(limit, MAX_PAGE_SIZE))


def _check_batch(ids: Sequence[str]) -> list[str]:
    if len(ids) > MAX_BATCH_SIZE:
        raise DLQBatchTooLargeError(len(ids), MAX_BATCH_SIZE)
    # Keep first occurrence order
    return list(dict.fromkeys(ids))


class DeadLetterManager:
    """Inspect, requeue and purge dead-lettered outbox entries.

    Args:
        store: Outbox store holding the dead-lettered entries
    """

    def __init__(self, store: OutboxStore) -> None:
        self.store = store

    async def list_dead_events(
        self,
        cursor: str | None = None,
        limit: int = DEFAULT_PAGE_SIZE,
        event_type: str | None = None,
        scope_id: str | None = None,
    ) -> DeadLetterPage:
        """List dead-lettered entries, newest failure first.

        Args:
            cursor: ``next_cursor`` of the previous page
            limit: Page size, clamped to [1, 100]
            event_type: Only entries of this event type
            scope_id: Only entries of this scope

        Raises:
            InvalidCursorError: If ``cursor`` is malformed
        """
        after = decode_seek_cursor(cursor) if cursor else None
        page_size = _clamp_limit(limit)
        filters = DeadLetterFilter(event_type=event_type, scope_id=scope_id)

        # One extra row tells whether another page exists
        rows = await self.store.list_dead(page_size + 1, after=after, filters=filters)
        items = rows[:page_size]

        next_cursor = None
        if len(rows) > page_size:
            last = items[-1]
            assert last.failed_at is not None
            assert last.id is not None
            next_cursor = encode_seek_cursor(last.failed_at, last.id)

        return DeadLetterPage(items=items, next_cursor=next_cursor)

    async def get_dead_event(self, entry_id: str) -> OutboxEntry | None:
        """Get a dead-lettered entry, or None if absent or not dead."""
        entry = await self.store.get(entry_id)
        if entry is None or entry.status is not OutboxStatus.FAILED:
            return None
        return entry

    async def count_dead_events(
        self,
        event_type: str | None = None,
        scope_id: str | None = None,
    ) -> int:
        return await self.store.count_dead(DeadLetterFilter(event_type=event_type, scope_id=scope_id))

    async def retry_dead_event(self, entry_id: str) -> bool:
        """Requeue one entry with a fresh retry budget."""
        requeued = await self.store.retry([entry_id])
        if requeued:
            dlq_requeued_total.inc()
            logger.info("Dead-lettered entry requeued", extra={"outbox_id": entry_id})
        return bool(requeued)

    async def retry_dead_event_batch(self, entry_ids: Sequence[str]) -> BatchResult:
        """Requeue up to 1000 entries.

        Raises:
            DLQBatchTooLargeError: If more than 1000 ids are given
        """
        ids = _check_batch(entry_ids)
        requeued = set(await self.store.retry(ids))
        result = self._batch_result(ids, requeued)
        if result.succeeded:
            dlq_requeued_total.inc(len(result.succeeded))
        logger.info(
            "Dead-lettered entries requeued",
            extra={"requeued": len(result.succeeded), "requested": len(ids)},
        )
        return result

    async def purge_dead_event(self, entry_id: str) -> bool:
        """Permanently delete one entry."""
        purged = await self.store.purge([entry_id])
        if purged:
            dlq_purged_total.inc()
            logger.info("Dead-lettered entry purged", extra={"outbox_id": entry_id})
        return bool(purged)

    async def purge_dead_event_batch(self, entry_ids: Sequence[str]) -> BatchResult:
        """Permanently delete up to 1000 entries.

        Raises:
            DLQBatchTooLargeError: If more than 1000 ids are given
        """
        ids = _check_batch(entry_ids)
        purged = set(await self.store.purge(ids))
        result = self._batch_result(ids, purged)
        if result.succeeded:
            dlq_purged_total.inc(len(result.succeeded))
        logger.info(
            "Dead-lettered entries purged",
            extra={"purged": len(result.succeeded), "requested": len(ids)},
        )
        return result

    async def retry_all_dead(self, limit: int = MAX_BATCH_SIZE) -> int:
        """Requeue the oldest dead-lettered entries, at most ``limit`` of them."""
        ids = await self.store.list_dead_ids(min(limit, MAX_BATCH_SIZE))
        if not ids:
            return 0
        return len((await self.retry_dead_event_batch(ids)).succeeded)

    async def purge_all_dead(self, limit: int = MAX_BATCH_SIZE) -> int:
        """Purge the oldest dead-lettered entries, at most ``limit`` of them."""
        ids = await self.store.list_dead_ids(min(limit, MAX_BATCH_SIZE))
        if not ids:
            return 0
        return len((await self.purge_dead_event_batch(ids)).succeeded)

    async def get_dlq_stats(self) -> DeadLetterStats:
        return await self.store.dead_stats()

    @staticmethod
    def _batch_result(ids: list[str], done: set[str]) -> BatchResult:
        return BatchResult(
            succeeded=[entry_id for entry_id in ids if entry_id in done],
            failed=[
                {"id": entry_id, "error": "Not found in dead-letter queue"}
                for entry_id in ids
                if entry_id not in done
            ],
        )


__all__ = [
    "DEFAULT_PAGE_SIZE",
    "MAX_BATCH_SIZE",
    "MAX_PAGE_SIZE",
    "BatchResult",
    "DeadLetterManager",
]
