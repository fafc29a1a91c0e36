"""Collector registry and bucket layouts for event bus metrics.

Collectors register on :data:`REGISTRY`, not the process default, so a host
application can mount them next to its own or ignore them entirely.
"""

from __future__ import annotations

from prometheus_client import CollectorRegistry

REGISTRY = CollectorRegistry(auto_describe=True)

# Handlers are mostly fast DB writes; the tail catches outbound HTTP calls
HANDLER_DURATION_BUCKETS = (0.002, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 10.0, 30.0)

# Backoff spans base_retry_delay up to max_retry_delay (60s by default)
RETRY_DELAY_BUCKETS = (0.25, 1.0, 2.0, 4.0, 8.0, 16.0, 32.0, 60.0, 300.0)

__all__ = ["HANDLER_DURATION_BUCKETS", "REGISTRY", "RETRY_DELAY_BUCKETS"]
