"""Transactional outbox for reliable in-process delivery.

The outbox guarantees at-least-once delivery by:
1. Writing reliably emitted events to a table before returning to the producer
2. Claiming due entries from a background worker and redelivering them
3. Retrying failures with backoff and dead-lettering exhausted entries
"""

from eventbus_service.infra.events.outbox.backoff import calculate_delay, next_retry_at
from eventbus_service.infra.events.outbox.dlq import BatchResult, DeadLetterManager
from eventbus_service.infra.events.outbox.models import OutboxRecord
from eventbus_service.infra.events.outbox.processor import OutboxWorker
from eventbus_service.infra.events.outbox.repository import SqlAlchemyOutboxStore

__all__ = [
    "BatchResult",
    "DeadLetterManager",
    "OutboxRecord",
    "OutboxWorker",
    "SqlAlchemyOutboxStore",
    "calculate_delay",
    "next_retry_at",
]
