"""IdempotencyRecord SQLAlchemy model.

One row per ``(scope_id, key)``. The unique constraint is what makes the
first insert the single owner of a unit of work.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Index, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from uuid_utils import uuid7

from eventbus_service.core.database import Base, TimestampMixin, UTCDateTime
from eventbus_service.core.events.idempotency import IdempotencyCheck, IdempotencyStatus


def _generate_id() -> str:
    return str(uuid7())


class IdempotencyRecord(Base, TimestampMixin):
    """Idempotency table row.

    Attributes:
        id: UUID v7 string primary key
        scope_id: Scope of the key (tenant id or "global")
        key: Idempotency key (event id, business key, or "lease:" name)
        status: in_progress, completed or failed
        result: JSON result stored on completion
        error: Error message stored on failure
        started_at: When the current attempt started
        expires_at: When the record stops counting
    """

    __tablename__ = "event_idempotency"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_id)
    scope_id: Mapped[str] = mapped_column(String(100), nullable=False)
    key: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=IdempotencyStatus.IN_PROGRESS.value,
    )
    result: Mapped[Any | None] = mapped_column(JSON, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    __table_args__ = (
        UniqueConstraint("scope_id", "key", name="uq_event_idempotency_scope_key"),
        Index("ix_event_idempotency_expires_at", "expires_at"),
    )

    def to_check(self) -> IdempotencyCheck:
        return IdempotencyCheck(
            status=IdempotencyStatus(self.status),
            result=self.result,
            error=self.error,
            started_at=self.started_at,
            expires_at=self.expires_at,
        )

    def __repr__(self) -> str:
        return f"IdempotencyRecord(scope_id={self.scope_id!r}, key={self.key!r}, status={self.status})"


__all__ = ["IdempotencyRecord"]
