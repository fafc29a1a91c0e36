"""LRU-cached settings loaders.

Settings are loaded and validated once, then cached for the lifetime of the process.

Usage:
    from eventbus_service.core.settings import get_outbox_settings

    settings = get_outbox_settings()  # First call: loads and validates
    settings = get_outbox_settings()  # Subsequent calls: returns cached instance

Testing:
    In tests, clear the cache to force reload:
    get_outbox_settings.cache_clear()

    Or construct an instance directly:
    settings = OutboxSettings(max_retries=3, base_retry_delay=0.01)
"""

from __future__ import annotations

from functools import lru_cache

from .database import DatabaseSettings
from .events import EventSettings
from .idempotency import IdempotencySettings
from .logs import LoggingSettings
from .outbox import OutboxSettings


@lru_cache(maxsize=1)
def get_event_settings() -> EventSettings:
    """Get cached event emitter settings.

    Returns:
        Validated and frozen EventSettings instance.
    """
    return EventSettings()


@lru_cache(maxsize=1)
def get_outbox_settings() -> OutboxSettings:
    """Get cached outbox worker settings.

    Returns:
        Validated and frozen OutboxSettings instance.
    """
    return OutboxSettings()


@lru_cache(maxsize=1)
def get_idempotency_settings() -> IdempotencySettings:
    """Get cached idempotency settings.

    Returns:
        Validated and frozen IdempotencySettings instance.
    """
    return IdempotencySettings()


@lru_cache(maxsize=1)
def get_db_settings() -> DatabaseSettings:
    """Get cached database settings.

    Returns:
        Validated and frozen DatabaseSettings instance.
    """
    return DatabaseSettings()


@lru_cache(maxsize=1)
def get_logging_settings() -> LoggingSettings:
    """Get cached logging settings.

    Returns:
        Validated and frozen LoggingSettings instance.
    """
    return LoggingSettings()


def clear_settings_cache() -> None:
    """Clear every cached settings instance (tests and reloads)."""
    get_event_settings.cache_clear()
    get_outbox_settings.cache_clear()
    get_idempotency_settings.cache_clear()
    get_db_settings.cache_clear()
    get_logging_settings.cache_clear()
