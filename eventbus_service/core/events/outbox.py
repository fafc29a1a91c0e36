"""Outbox store protocol and normalized data structures.

This module defines:
- The lifecycle states of an outbox entry
- Normalized entry, page and stats structures shared by all stores
- The Protocol interface that outbox stores must implement

The emitter, the outbox worker and the DLQ manager depend only on this
module; concrete stores live under ``eventbus_service.infra.events.outbox``.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import StrEnum
from typing import TYPE_CHECKING, Protocol

from eventbus_service.core.events.base import Event

if TYPE_CHECKING:
    from collections.abc import Sequence
    from datetime import datetime

# Error messages stored on entries are truncated to this many characters
MAX_ERROR_LENGTH = 1000


class OutboxStatus(StrEnum):
    """Lifecycle state of an outbox entry.

    pending -> processing -> completed
                          -> processing (retry scheduled via next_retry_at)
                          -> failed (dead-lettered, terminal until requeued)
    """

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# ============================================================================
# Normalized Data Structures
# ============================================================================


@dataclass(frozen=True)
class OutboxEntry:
    """A durable delivery of one event.

    Attributes:
        event: The event envelope, including its original metadata
        status: Current lifecycle state
        attempts: Delivery attempts made so far (incremented on claim)
        last_error: Error message of the most recent failed attempt
        next_retry_at: Earliest time a processing entry may be reclaimed
        created_at: When the entry was written
        updated_at: When the entry last changed
        failed_at: When the entry was dead-lettered
        id: Store-assigned identifier (None until inserted)
    """

    event: Event
    status: OutboxStatus = OutboxStatus.PENDING
    attempts: int = 0
    last_error: str | None = None
    next_retry_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    failed_at: datetime | None = None
    id: str | None = None

    @property
    def event_id(self) -> str:
        return self.event.meta.event_id

    @property
    def event_type(self) -> str:
        return self.event.type

    @classmethod
    def pending(cls, event: Event) -> OutboxEntry:
        """Build a fresh pending entry for ``event``."""
        return cls(event=event, status=OutboxStatus.PENDING, attempts=0)

    def with_changes(self, **changes: object) -> OutboxEntry:
        """Return a copy with the given fields replaced."""
        return replace(self, **changes)  # type: ignore[arg-type]


@dataclass(frozen=True)
class DeadLetterPage:
    """One page of dead-lettered entries.

    Attributes:
        items: Entries ordered by failed_at desc, id desc
        next_cursor: Opaque cursor for the following page, None on the last page
    """

    items: list[OutboxEntry]
    next_cursor: str | None = None

    @property
    def has_more(self) -> bool:
        return self.next_cursor is not None


@dataclass(frozen=True)
class DeadLetterStats:
    """Outbox counts by status plus a breakdown of the dead-letter queue.

    Attributes:
        by_status: Entry count per status (every status present, zero if empty)
        dead_by_type: Dead-lettered entry count per event type
        dead_by_error: Dead-lettered entry count per last error message
        oldest_failure: failed_at of the oldest dead-lettered entry
        newest_failure: failed_at of the newest dead-lettered entry
    """

    by_status: dict[OutboxStatus, int] = field(default_factory=dict)
    dead_by_type: dict[str, int] = field(default_factory=dict)
    dead_by_error: dict[str, int] = field(default_factory=dict)
    oldest_failure: datetime | None = None
    newest_failure: datetime | None = None

    @property
    def dead_total(self) -> int:
        return self.by_status.get(OutboxStatus.FAILED, 0)


@dataclass(frozen=True)
class DeadLetterFilter:
    """Optional filters for DLQ listing and counting."""

    event_type: str | None = None
    scope_id: str | None = None


# ============================================================================
# Outbox Store Protocol
# ============================================================================


class OutboxStore(Protocol):
    """Protocol interface for durable outbox stores.

    Implementations must make :meth:`claim_batch` atomic per entry: an entry
    is flipped to processing (with ``attempts += 1``) only if it still matches
    the claim filter, so two workers never both claim it.
    """

    async def insert(self, entry: OutboxEntry) -> OutboxEntry:
        """Durably persist a new entry and return it with its store id."""
        ...

    async def claim_batch(self, now: datetime, limit: int) -> list[OutboxEntry]:
        """Claim up to ``limit`` due entries, oldest first."""
        ...

    async def mark_completed(self, entry_id: str) -> None:
        ...

    async def mark_retry(self, entry_id: str, error: str, next_retry_at: datetime) -> None:
        """Keep the entry processing and schedule its next attempt."""
        ...

    async def mark_failed(self, entry_id: str, error: str) -> None:
        """Dead-letter the entry."""
        ...

    async def get(self, entry_id: str) -> OutboxEntry | None:
        ...

    async def list_dead(
        self,
        limit: int,
        after: tuple[datetime, str] | None = None,
        filters: DeadLetterFilter | None = None,
    ) -> list[OutboxEntry]:
        """List dead entries ordered by (failed_at desc, id desc) after a seek key."""
        ...

    async def count_dead(self, filters: DeadLetterFilter | None = None) -> int:
        ...

    async def retry(self, entry_ids: Sequence[str]) -> list[str]:
        """Move dead entries back to pending; return the ids that were requeued."""
        ...

    async def purge(self, entry_ids: Sequence[str]) -> list[str]:
        """Delete dead entries; return the ids that were deleted."""
        ...

    async def list_dead_ids(self, limit: int) -> list[str]:
        """Ids of the oldest dead entries, for bounded bulk operations."""
        ...

    async def retry_failed_by_event_id(self, event_id: str) -> bool:
        """Requeue the dead entry carrying ``event_id``."""
        ...

    async def count_by_status(self) -> dict[OutboxStatus, int]:
        ...

    async def dead_stats(self) -> DeadLetterStats:
        ...

    async def cleanup_completed(self, older_than: datetime) -> int:
        """Delete completed entries last updated before ``older_than``."""
        ...


def truncate_error(error: str) -> str:
    """Clip an error message to the stored length."""
    return error[:MAX_ERROR_LENGTH]


__all__ = [
    "MAX_ERROR_LENGTH",
    "DeadLetterFilter",
    "DeadLetterPage",
    "DeadLetterStats",
    "OutboxEntry",
    "OutboxStatus",
    "OutboxStore",
    "truncate_error",
]
