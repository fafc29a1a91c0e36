"""OutboxRecord SQLAlchemy model for reliable event delivery.

The outbox table stores reliably emitted events until the outbox worker has
delivered them to every in-process handler. Failed deliveries stay in the
table with a retry schedule; entries that exhaust their retries remain as
``failed`` rows, which is the dead-letter queue.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column
from uuid_utils import uuid7

from eventbus_service.core.database import Base, TimestampMixin, UTCDateTime
from eventbus_service.core.events.base import Event, EventMeta
from eventbus_service.core.events.outbox import OutboxEntry, OutboxStatus


def _generate_id() -> str:
    return str(uuid7())


class OutboxRecord(Base, TimestampMixin):
    """Outbox table row.

    Attributes:
        id: UUID v7 string primary key (time-sortable)
        event_id: Event identifier from the envelope (unique)
        event_type: Registered event type name
        payload: Validated event payload (JSON)
        schema_version: Payload schema version at emission time
        source: Producer name
        correlation_id: Request/trace correlation id
        scope_type: Kind of scope the event belongs to
        scope_id: Scope identifier (e.g. tenant id)
        emitted_at: Envelope timestamp
        status: pending, processing, completed or failed
        attempts: Delivery attempts made (incremented on claim)
        last_error: Most recent delivery error (truncated)
        next_retry_at: Earliest time a processing entry may be reclaimed
        failed_at: When the entry was dead-lettered

    Indexes follow the worker and DLQ query patterns:
    - Claimable entries by status, due time and age
    - Dead-lettered entries by failure time and id (seek pagination)
    """

    __tablename__ = "event_outbox"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=_generate_id,
        comment="UUID v7 primary key (time-sortable)",
    )

    # Envelope
    event_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        unique=True,
        comment="Event identifier",
    )
    event_type: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        index=True,
        comment="Event type identifier",
    )
    payload: Mapped[dict[str, Any]] = mapped_column(
        JSON,
        nullable=False,
        comment="Validated event payload",
    )
    schema_version: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=1,
        comment="Event schema version",
    )
    source: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        comment="Producer of the event",
    )
    correlation_id: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
        index=True,
        comment="Request/trace correlation ID",
    )
    scope_type: Mapped[str | None] = mapped_column(
        String(50),
        nullable=True,
        comment="Scope type (e.g. tenant)",
    )
    scope_id: Mapped[str | None] = mapped_column(
        String(100),
        nullable=True,
        index=True,
        comment="Scope identifier",
    )
    emitted_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
        comment="Envelope timestamp",
    )

    # Delivery state
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=OutboxStatus.PENDING.value,
        comment="pending, processing, completed or failed",
    )
    attempts: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        comment="Delivery attempts made",
    )
    last_error: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
        comment="Most recent delivery error",
    )
    next_retry_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(),
        nullable=True,
        comment="Earliest time the entry may be claimed again",
    )
    failed_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(),
        nullable=True,
        comment="When the entry was dead-lettered",
    )

    __table_args__ = (
        Index("ix_event_outbox_claim", "status", "next_retry_at", "created_at"),
        Index("ix_event_outbox_dead", "status", "failed_at", "id"),
    )

    @classmethod
    def from_entry(cls, entry: OutboxEntry) -> OutboxRecord:
        """Build a new row from a domain entry."""
        meta = entry.event.meta
        return cls(
            event_id=meta.event_id,
            event_type=entry.event.type,
            payload=entry.event.payload,
            schema_version=meta.schema_version,
            source=meta.source,
            correlation_id=meta.correlation_id,
            scope_type=meta.scope_type,
            scope_id=meta.scope_id,
            emitted_at=meta.timestamp,
            status=entry.status.value,
            attempts=entry.attempts,
            last_error=entry.last_error,
            next_retry_at=entry.next_retry_at,
            failed_at=entry.failed_at,
        )

    def to_entry(self) -> OutboxEntry:
        """Convert the row to a domain entry."""
        event = Event(
            type=self.event_type,
            payload=self.payload,
            meta=EventMeta(
                event_id=self.event_id,
                timestamp=self.emitted_at,
                schema_version=self.schema_version,
                source=self.source,
                correlation_id=self.correlation_id,
                scope_type=self.scope_type,
                scope_id=self.scope_id,
            ),
        )
        return OutboxEntry(
            event=event,
            status=OutboxStatus(self.status),
            attempts=self.attempts,
            last_error=self.last_error,
            next_retry_at=self.next_retry_at,
            created_at=self.created_at,
            updated_at=self.updated_at,
            failed_at=self.failed_at,
            id=self.id,
        )

    def __repr__(self) -> str:
        return (
            f"OutboxRecord(id={self.id}, event_type={self.event_type!r}, "
            f"status={self.status}, attempts={self.attempts})"
        )


__all__ = ["OutboxRecord"]
