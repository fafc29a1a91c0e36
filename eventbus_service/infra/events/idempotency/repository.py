"""SQLAlchemy implementation of the idempotency store.

Ownership of a key is decided by the database: the first INSERT wins the
unique constraint, and takeovers of stale or failed records are conditional
UPDATEs that only one caller can match.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError

from eventbus_service.core.events.idempotency import IdempotencyCheck, IdempotencyStatus
from eventbus_service.infra.database.session import session_scope
from eventbus_service.infra.events.idempotency.models import IdempotencyRecord

if TYPE_CHECKING:
    from datetime import datetime

    from sqlalchemy import ColumnElement
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)

# Insert attempts before reporting a key as contended
MAX_BEGIN_ATTEMPTS = 3

_IN_PROGRESS = IdempotencyStatus.IN_PROGRESS.value
_COMPLETED = IdempotencyStatus.COMPLETED.value
_FAILED = IdempotencyStatus.FAILED.value


def _match(scope_id: str, key: str) -> ColumnElement[bool]:
    return (IdempotencyRecord.scope_id == scope_id) & (IdempotencyRecord.key == key)


class SqlAlchemyIdempotencyStore:
    """Idempotency store backed by the ``event_idempotency`` table.

    Args:
        session_factory: Async session factory bound to the bus database
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

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
        owned = IdempotencyCheck(
            status=IdempotencyStatus.NONE,
            started_at=now,
            expires_at=expires_at,
        )

        for _ in range(MAX_BEGIN_ATTEMPTS):
            async with self._session_factory() as session:
                await session.execute(
                    delete(IdempotencyRecord).where(
                        _match(scope_id, key), IdempotencyRecord.expires_at <= now
                    )
                )
                session.add(
                    IdempotencyRecord(
                        scope_id=scope_id,
                        key=key,
                        status=_IN_PROGRESS,
                        started_at=now,
                        expires_at=expires_at,
                    )
                )
                try:
                    await session.commit()
                except IntegrityError:
                    await session.rollback()
                else:
                    return owned

                existing = (
                    await session.execute(select(IdempotencyRecord).where(_match(scope_id, key)))
                ).scalar_one_or_none()
                if existing is None:
                    # Deleted between our insert and read
                    continue

                if self._takeover_allowed(existing, stale_before, reclaim_failed) and (
                    await self._take_over(session, existing, now=now, expires_at=expires_at)
                ):
                    logger.info(
                        "Reclaimed idempotency key",
                        extra={
                            "scope_id": scope_id,
                            "idempotency_key": key,
                            "previous_status": existing.status,
                        },
                    )
                    return owned

                return existing.to_check()

        logger.warning(
            "Idempotency key contended, reporting in progress",
            extra={"scope_id": scope_id, "idempotency_key": key},
        )
        return IdempotencyCheck(status=IdempotencyStatus.IN_PROGRESS)

    @staticmethod
    def _takeover_allowed(
        record: IdempotencyRecord,
        stale_before: datetime | None,
        reclaim_failed: bool,
    ) -> bool:
        if record.status == _IN_PROGRESS:
            return stale_before is not None and record.started_at < stale_before
        return record.status == _FAILED and reclaim_failed

    @staticmethod
    async def _take_over(
        session: AsyncSession,
        record: IdempotencyRecord,
        *,
        now: datetime,
        expires_at: datetime,
    ) -> bool:
        # Matches only while the row still holds what we read
        result = await session.execute(
            update(IdempotencyRecord)
            .where(
                IdempotencyRecord.id == record.id,
                IdempotencyRecord.status == record.status,
                IdempotencyRecord.started_at == record.started_at,
            )
            .values(
                status=_IN_PROGRESS,
                result=None,
                error=None,
                started_at=now,
                expires_at=expires_at,
            )
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        return result.rowcount == 1

    async def get(self, scope_id: str, key: str, *, now: datetime) -> IdempotencyCheck:
        async with self._session_factory() as session:
            record = (
                await session.execute(
                    select(IdempotencyRecord).where(
                        _match(scope_id, key), IdempotencyRecord.expires_at > now
                    )
                )
            ).scalar_one_or_none()
        if record is None:
            return IdempotencyCheck(status=IdempotencyStatus.NONE)
        return record.to_check()

    async def complete(
        self, scope_id: str, key: str, result: Any, *, expires_at: datetime
    ) -> bool:
        return await self._finish(
            scope_id, key, status=_COMPLETED, result=result, error=None, expires_at=expires_at
        )

    async def fail(self, scope_id: str, key: str, error: str, *, expires_at: datetime) -> bool:
        return await self._finish(
            scope_id, key, status=_FAILED, result=None, error=error, expires_at=expires_at
        )

    async def _finish(self, scope_id: str, key: str, **values: Any) -> bool:
        # Only an in_progress record may become terminal
        async with session_scope(self._session_factory) as session:
            result = await session.execute(
                update(IdempotencyRecord)
                .where(_match(scope_id, key), IdempotencyRecord.status == _IN_PROGRESS)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
        return result.rowcount == 1

    async def clear(self, scope_id: str, key: str) -> bool:
        async with session_scope(self._session_factory) as session:
            result = await session.execute(
                delete(IdempotencyRecord)
                .where(_match(scope_id, key))
                .execution_options(synchronize_session=False)
            )
        return result.rowcount > 0

    async def cleanup_expired(self, now: datetime) -> int:
        """Delete records whose ``expires_at`` has passed."""
        async with session_scope(self._session_factory) as session:
            result = await session.execute(
                delete(IdempotencyRecord)
                .where(IdempotencyRecord.expires_at <= now)
                .execution_options(synchronize_session=False)
            )
        deleted = result.rowcount or 0
        if deleted:
            logger.info("Cleaned up expired idempotency records", extra={"deleted": deleted})
        return deleted


__all__ = ["SqlAlchemyIdempotencyStore"]
