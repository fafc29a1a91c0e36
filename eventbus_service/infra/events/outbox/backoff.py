"""Retry delay calculation for outbox deliveries.

Delays grow exponentially with the attempt count, are capped, and get
uniform jitter so entries that failed together do not retry together:

    delay = min(base * 2**attempts, max) * uniform(1 - jitter, 1 + jitter)
"""

from __future__ import annotations

from datetime import datetime, timedelta
import random
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from eventbus_service.core.settings import OutboxSettings

BACKOFF_MULTIPLIER = 2.0


def calculate_delay(
    attempts: int,
    *,
    base_delay: float,
    max_delay: float,
    jitter_ratio: float = 0.1,
) -> float:
    """Calculate the retry delay after a failed attempt.

    Args:
        attempts: Attempts made so far (the failed one included).
        base_delay: Base delay in seconds.
        max_delay: Cap applied before jitter, in seconds.
        jitter_ratio: Relative jitter (0.1 gives +/-10%).

    Returns:
        Delay in seconds.

    Example:
        calculate_delay(1, base_delay=1.0, max_delay=60.0)  # ~2s (1.8-2.2s)
        calculate_delay(3, base_delay=1.0, max_delay=60.0)  # ~8s (7.2-8.8s)
        calculate_delay(9, base_delay=1.0, max_delay=60.0)  # ~60s (54-66s)
    """
    capped_delay = min(base_delay * (BACKOFF_MULTIPLIER**attempts), max_delay)
    if jitter_ratio > 0:
        capped_delay = _apply_jitter(capped_delay, (1.0 - jitter_ratio, 1.0 + jitter_ratio))
    return capped_delay


def next_retry_at(attempts: int, settings: OutboxSettings, now: datetime) -> tuple[datetime, float]:
    """Schedule the next attempt relative to ``now``.

    Returns:
        The retry time and the delay in seconds it was computed from.
    """
    delay = calculate_delay(
        attempts,
        base_delay=settings.base_retry_delay,
        max_delay=settings.max_retry_delay,
        jitter_ratio=settings.jitter_ratio,
    )
    return now + timedelta(seconds=delay), delay


def _apply_jitter(delay: float, jitter_range: tuple[float, float]) -> float:
    """Multiply the delay by a random factor within ``jitter_range``."""
    min_jitter, max_jitter = jitter_range
    return delay * random.uniform(min_jitter, max_jitter)


__all__ = ["BACKOFF_MULTIPLIER", "calculate_delay", "next_retry_at"]
