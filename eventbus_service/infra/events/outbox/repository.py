"""SQLAlchemy implementation of the outbox store.

Provides methods for:
- Writing new entries durably
- Claiming due entries atomically for delivery
- Recording delivery outcomes (completed, retry, dead-lettered)
- Listing, requeueing and purging dead-lettered entries
- Cleaning up old completed entries

Claims never hold row locks across delivery: candidates are selected, then
each is flipped with a conditional UPDATE that only matches while the row is
still claimable. An UPDATE that matches no row means another worker won.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
import logging
from typing import TYPE_CHECKING

from sqlalchemy import and_, delete, func, or_, select, update

from eventbus_service.core.events.outbox import (
    DeadLetterFilter,
    DeadLetterStats,
    OutboxEntry,
    OutboxStatus,
    truncate_error,
)
from eventbus_service.infra.events.outbox.models import OutboxRecord

if TYPE_CHECKING:
    from collections.abc import Sequence

    from sqlalchemy import ColumnElement, Select
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)

# Number of distinct error messages reported in DLQ stats
TOP_ERRORS_LIMIT = 20

_PENDING = OutboxStatus.PENDING.value
_PROCESSING = OutboxStatus.PROCESSING.value
_COMPLETED = OutboxStatus.COMPLETED.value
_FAILED = OutboxStatus.FAILED.value


def _claimable(now: datetime) -> ColumnElement[bool]:
    return or_(
        OutboxRecord.status == _PENDING,
        and_(
            OutboxRecord.status == _PROCESSING,
            OutboxRecord.next_retry_at.is_not(None),
            OutboxRecord.next_retry_at <= now,
        ),
    )


def _apply_dead_filters(stmt: Select, filters: DeadLetterFilter | None) -> Select:
    stmt = stmt.where(OutboxRecord.status == _FAILED)
    if filters is None:
        return stmt
    if filters.event_type is not None:
        stmt = stmt.where(OutboxRecord.event_type == filters.event_type)
    if filters.scope_id is not None:
        stmt = stmt.where(OutboxRecord.scope_id == filters.scope_id)
    return stmt


class SqlAlchemyOutboxStore:
    """Outbox store backed by the ``event_outbox`` table.

    Each call runs in its own session and commits before returning.

    Args:
        session_factory: Async session factory bound to the bus database
        claim_timeout: Seconds a claimed entry stays invisible to other
            workers; an entry whose worker died becomes claimable again after it
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        claim_timeout: float = 300.0,
    ) -> None:
        self._session_factory = session_factory
        self.claim_timeout = claim_timeout

    # ──────────────────────────────────────────────────────────────
    # Producer side
    # ──────────────────────────────────────────────────────────────

    async def insert(self, entry: OutboxEntry) -> OutboxEntry:
        """Persist a new entry; returns once the transaction is committed."""
        record = OutboxRecord.from_entry(entry)
        async with self._session_factory() as session:
            session.add(record)
            await session.commit()
            return record.to_entry()

    # ──────────────────────────────────────────────────────────────
    # Worker side
    # ──────────────────────────────────────────────────────────────

    async def claim_batch(self, now: datetime, limit: int) -> list[OutboxEntry]:
        """Claim up to ``limit`` due entries, oldest first.

        Returns events that:
        - Are pending, or
        - Are processing with a due ``next_retry_at`` (scheduled retry or
          abandoned claim)

        Each returned entry is now processing with ``attempts`` incremented.
        """
        visible_after = now + timedelta(seconds=self.claim_timeout)

        async with self._session_factory() as session:
            candidates = (
                await session.execute(
                    select(OutboxRecord.id)
                    .where(_claimable(now))
                    .order_by(OutboxRecord.created_at.asc(), OutboxRecord.id.asc())
                    .limit(limit)
                )
            ).scalars().all()
            if not candidates:
                return []

            claimed: list[str] = []
            for entry_id in candidates:
                result = await session.execute(
                    update(OutboxRecord)
                    .where(OutboxRecord.id == entry_id, _claimable(now))
                    .values(
                        status=_PROCESSING,
                        attempts=OutboxRecord.attempts + 1,
                        next_retry_at=visible_after,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    claimed.append(entry_id)
            await session.commit()

            if not claimed:
                return []

            rows = (
                await session.execute(
                    select(OutboxRecord)
                    .where(OutboxRecord.id.in_(claimed))
                    .order_by(OutboxRecord.created_at.asc(), OutboxRecord.id.asc())
                )
            ).scalars().all()

        if len(claimed) < len(candidates):
            logger.debug(
                "Lost claims to another worker",
                extra={"candidates": len(candidates), "claimed": len(claimed)},
            )
        return [row.to_entry() for row in rows]

    async def mark_completed(self, entry_id: str) -> None:
        await self._transition(
            entry_id,
            status=_COMPLETED,
            last_error=None,
            next_retry_at=None,
        )

    async def mark_retry(self, entry_id: str, error: str, next_retry_at: datetime) -> None:
        await self._transition(
            entry_id,
            status=_PROCESSING,
            last_error=truncate_error(error),
            next_retry_at=next_retry_at,
        )

    async def mark_failed(self, entry_id: str, error: str) -> None:
        await self._transition(
            entry_id,
            status=_FAILED,
            last_error=truncate_error(error),
            next_retry_at=None,
            failed_at=datetime.now(UTC),
        )

    async def _transition(self, entry_id: str, **values: object) -> None:
        # Only processing entries may change outcome
        async with self._session_factory() as session:
            result = await session.execute(
                update(OutboxRecord)
                .where(OutboxRecord.id == entry_id, OutboxRecord.status == _PROCESSING)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        if result.rowcount != 1:
            logger.warning(
                "Outbox entry was not processing, outcome not recorded",
                extra={"outbox_id": entry_id, "status": values.get("status")},
            )

    # ──────────────────────────────────────────────────────────────
    # Inspection
    # ──────────────────────────────────────────────────────────────

    async def get(self, entry_id: str) -> OutboxEntry | None:
        async with self._session_factory() as session:
            record = await session.get(OutboxRecord, entry_id)
            return record.to_entry() if record is not None else None

    async def get_by_event_id(self, event_id: str) -> OutboxEntry | None:
        async with self._session_factory() as session:
            record = (
                await session.execute(select(OutboxRecord).where(OutboxRecord.event_id == event_id))
            ).scalar_one_or_none()
            return record.to_entry() if record is not None else None

    async def count_by_status(self) -> dict[OutboxStatus, int]:
        async with self._session_factory() as session:
            rows = (
                await session.execute(
                    select(OutboxRecord.status, func.count()).group_by(OutboxRecord.status)
                )
            ).all()
        counts = dict.fromkeys(OutboxStatus, 0)
        for status, count in rows:
            counts[OutboxStatus(status)] = count
        return counts

    # ──────────────────────────────────────────────────────────────
    # Dead-letter queue
    # ──────────────────────────────────────────────────────────────

    async def list_dead(
        self,
        limit: int,
        after: tuple[datetime, str] | None = None,
        filters: DeadLetterFilter | None = None,
    ) -> list[OutboxEntry]:
        """List dead entries newest first, seeking past ``after``."""
        stmt = _apply_dead_filters(select(OutboxRecord), filters)
        if after is not None:
            failed_at, entry_id = after
            stmt = stmt.where(
                or_(
                    OutboxRecord.failed_at < failed_at,
                    and_(OutboxRecord.failed_at == failed_at, OutboxRecord.id < entry_id),
                )
            )
        stmt = stmt.order_by(OutboxRecord.failed_at.desc(), OutboxRecord.id.desc()).limit(limit)

        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [row.to_entry() for row in rows]

    async def count_dead(self, filters: DeadLetterFilter | None = None) -> int:
        stmt = _apply_dead_filters(select(func.count()).select_from(OutboxRecord), filters)
        async with self._session_factory() as session:
            return (await session.execute(stmt)).scalar_one()

    async def list_dead_ids(self, limit: int) -> list[str]:
        async with self._session_factory() as session:
            return list(
                (
                    await session.execute(
                        select(OutboxRecord.id)
                        .where(OutboxRecord.status == _FAILED)
                        .order_by(OutboxRecord.failed_at.asc(), OutboxRecord.id.asc())
                        .limit(limit)
                    )
                ).scalars()
            )

    async def retry(self, entry_ids: Sequence[str]) -> list[str]:
        """Requeue dead entries with a fresh retry budget."""
        if not entry_ids:
            return []
        async with self._session_factory() as session:
            result = await session.execute(
                update(OutboxRecord)
                .where(OutboxRecord.id.in_(list(entry_ids)), OutboxRecord.status == _FAILED)
                .values(**self._requeue_values())
                .returning(OutboxRecord.id)
                .execution_options(synchronize_session=False)
            )
            requeued = list(result.scalars())
            await session.commit()
        return requeued

    async def retry_failed_by_event_id(self, event_id: str) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                update(OutboxRecord)
                .where(OutboxRecord.event_id == event_id, OutboxRecord.status == _FAILED)
                .values(**self._requeue_values())
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        return result.rowcount > 0

    async def purge(self, entry_ids: Sequence[str]) -> list[str]:
        """Permanently delete dead entries."""
        if not entry_ids:
            return []
        async with self._session_factory() as session:
            result = await session.execute(
                delete(OutboxRecord)
                .where(OutboxRecord.id.in_(list(entry_ids)), OutboxRecord.status == _FAILED)
                .returning(OutboxRecord.id)
                .execution_options(synchronize_session=False)
            )
            purged = list(result.scalars())
            await session.commit()
        return purged

    async def dead_stats(self) -> DeadLetterStats:
        dead = OutboxRecord.status == _FAILED
        by_status = await self.count_by_status()
        async with self._session_factory() as session:
            by_type = (
                await session.execute(
                    select(OutboxRecord.event_type, func.count())
                    .where(dead)
                    .group_by(OutboxRecord.event_type)
                )
            ).all()
            by_error = (
                await session.execute(
                    select(OutboxRecord.last_error, func.count())
                    .where(dead)
                    .group_by(OutboxRecord.last_error)
                    .order_by(func.count().desc())
                    .limit(TOP_ERRORS_LIMIT)
                )
            ).all()
            oldest, newest = (
                await session.execute(
                    select(func.min(OutboxRecord.failed_at), func.max(OutboxRecord.failed_at)).where(
                        dead
                    )
                )
            ).one()

        return DeadLetterStats(
            by_status=by_status,
            dead_by_type={event_type: count for event_type, count in by_type},
            dead_by_error={(error or "unknown"): count for error, count in by_error},
            oldest_failure=_as_utc(oldest),
            newest_failure=_as_utc(newest),
        )

    async def cleanup_completed(self, older_than: datetime) -> int:
        """Delete completed entries last updated before ``older_than``."""
        async with self._session_factory() as session:
            result = await session.execute(
                delete(OutboxRecord)
                .where(OutboxRecord.status == _COMPLETED, OutboxRecord.updated_at < older_than)
                .returning(OutboxRecord.id)
                .execution_options(synchronize_session=False)
            )
            deleted = len(result.scalars().all())
            await session.commit()
        if deleted:
            logger.info("Cleaned up completed outbox entries", extra={"deleted": deleted})
        return deleted

    @staticmethod
    def _requeue_values() -> dict[str, object]:
        return {
            "status": _PENDING,
            "attempts": 0,
            "last_error": None,
            "next_retry_at": None,
            "failed_at": None,
        }


def _as_utc(value: datetime | str | None) -> datetime | None:
    # Aggregates bypass the column type on SQLite
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


__all__ = ["SqlAlchemyOutboxStore"]
