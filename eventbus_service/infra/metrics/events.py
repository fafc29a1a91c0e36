"""Prometheus metrics for the event bus.

This module provides metrics for observing event flow:
- Emitted events by type and delivery mode
- Handler outcomes and durations
- Handler error tiers and in-handler retries
- Outbox delivery outcomes, retry delays and poll errors
- Outbox and DLQ depth
- Idempotency check results

All metrics use the shared REGISTRY from infra/metrics/prometheus.py.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from prometheus_client import Counter, Gauge, Histogram

from eventbus_service.infra.metrics.prometheus import (
    HANDLER_DURATION_BUCKETS,
    REGISTRY,
    RETRY_DELAY_BUCKETS,
)

if TYPE_CHECKING:
    from collections.abc import Mapping

# ============================================================================
# Emitter Metrics
# ============================================================================

events_emitted_total = Counter(
    "eventbus_events_emitted_total",
    "Total events accepted by the emitter. "
    "mode=sync for immediate fan-out, mode=reliable for outbox writes.",
    ["event_type", "mode"],
    registry=REGISTRY,
)

event_handler_invocations_total = Counter(
    "eventbus_handler_invocations_total",
    "Total handler invocations by outcome (success, failure).",
    ["event_type", "outcome"],
    registry=REGISTRY,
)

event_handler_duration_seconds = Histogram(
    "eventbus_handler_duration_seconds",
    "Handler execution time in seconds.",
    ["event_type"],
    buckets=HANDLER_DURATION_BUCKETS,
    registry=REGISTRY,
)

event_handlers_registered = Gauge(
    "eventbus_handlers_registered",
    "Currently registered handlers per event type ('*' for global handlers).",
    ["event_type"],
    registry=REGISTRY,
)

handler_errors_total = Counter(
    "eventbus_handler_errors_total",
    "Handler errors caught by with_error_handling, by tier.",
    ["tier"],
    registry=REGISTRY,
)

handler_retries_total = Counter(
    "eventbus_handler_retries_total",
    "In-handler retry events by context. "
    "Outcomes: retried, recovered, exhausted.",
    ["context", "outcome"],
    registry=REGISTRY,
)

# ============================================================================
# Outbox Metrics
# ============================================================================

outbox_deliveries_total = Counter(
    "eventbus_outbox_deliveries_total",
    "Outbox delivery attempts by outcome. "
    "Outcomes: delivered, retried, dead_lettered.",
    ["event_type", "outcome"],
    registry=REGISTRY,
)

outbox_retry_delay_seconds = Histogram(
    "eventbus_outbox_retry_delay_seconds",
    "Backoff delay scheduled for failed outbox entries.",
    buckets=RETRY_DELAY_BUCKETS,
    registry=REGISTRY,
)

outbox_poll_errors_total = Counter(
    "eventbus_outbox_poll_errors_total",
    "Poll cycles that failed before dispatching (store unavailable, etc.).",
    registry=REGISTRY,
)

outbox_entries = Gauge(
    "eventbus_outbox_entries",
    "Outbox entries by status at the last refresh.",
    ["status"],
    registry=REGISTRY,
)

dlq_requeued_total = Counter(
    "eventbus_dlq_requeued_total",
    "Dead-lettered entries moved back to pending.",
    registry=REGISTRY,
)

dlq_purged_total = Counter(
    "eventbus_dlq_purged_total",
    "Dead-lettered entries permanently deleted.",
    registry=REGISTRY,
)

# ============================================================================
# Idempotency Metrics
# ============================================================================

idempotency_checks_total = Counter(
    "eventbus_idempotency_checks_total",
    "Idempotency checks by resulting status (none, in_progress, completed, failed).",
    ["status"],
    registry=REGISTRY,
)


# ============================================================================
# Helper Functions
# ============================================================================


def record_emitted(event_type: str, *, reliable: bool = False) -> None:
    """Record an event accepted by the emitter."""
    events_emitted_total.labels(
        event_type=event_type,
        mode="reliable" if reliable else "sync",
    ).inc()


def record_handler_result(event_type: str, *, success: bool, duration: float) -> None:
    """Record one handler invocation.

    Args:
        event_type: Type of the dispatched event.
        success: Whether the handler returned without raising.
        duration: Wall time spent in the handler, in seconds.
    """
    event_handler_invocations_total.labels(
        event_type=event_type,
        outcome="success" if success else "failure",
    ).inc()
    event_handler_duration_seconds.labels(event_type=event_type).observe(duration)


def record_delivery(event_type: str, outcome: str, retry_delay: float | None = None) -> None:
    """Record the outcome of redelivering one outbox entry.

    Args:
        event_type: Type of the redelivered event.
        outcome: One of delivered, retried, dead_lettered.
        retry_delay: Scheduled backoff in seconds when outcome is retried.
    """
    outbox_deliveries_total.labels(event_type=event_type, outcome=outcome).inc()
    if retry_delay is not None:
        outbox_retry_delay_seconds.observe(retry_delay)


def record_outbox_depth(counts: Mapping[str, int]) -> None:
    """Publish outbox entry counts keyed by status."""
    for status, count in counts.items():
        outbox_entries.labels(status=status).set(count)


def set_handler_count(event_type: str, count: int) -> None:
    """Publish the current number of handlers for an event type."""
    event_handlers_registered.labels(event_type=event_type).set(count)


__all__ = [
    "dlq_purged_total",
    "dlq_requeued_total",
    "event_handler_duration_seconds",
    "event_handler_invocations_total",
    "event_handlers_registered",
    "handler_errors_total",
    "handler_retries_total",
    "events_emitted_total",
    "idempotency_checks_total",
    "outbox_deliveries_total",
    "outbox_entries",
    "outbox_poll_errors_total",
    "outbox_retry_delay_seconds",
    "record_delivery",
    "record_emitted",
    "record_handler_result",
    "record_outbox_depth",
    "set_handler_count",
]
