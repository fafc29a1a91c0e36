"""Database-backed idempotency records."""

from eventbus_service.infra.events.idempotency.models import IdempotencyRecord
from eventbus_service.infra.events.idempotency.repository import SqlAlchemyIdempotencyStore

__all__ = ["IdempotencyRecord", "SqlAlchemyIdempotencyStore"]
