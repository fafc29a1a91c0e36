"""Storage-backed event delivery.

This package provides the SQLAlchemy side of the event bus:
- Outbox table, store, worker and dead-letter manager
- Idempotency table and store
"""
