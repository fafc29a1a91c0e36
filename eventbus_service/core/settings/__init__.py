"""Modular Pydantic Settings v2 configuration.

One frozen settings class per domain, each read from environment variables
with its own prefix (EVENTS_, OUTBOX_, IDEMPOTENCY_, DB_, LOG_) and an
optional .env file. Import settings via the cached loaders:

    from eventbus_service.core.settings import get_event_settings
"""

from __future__ import annotations

from .database import DatabaseSettings
from .events import EventSettings
from .idempotency import IdempotencySettings
from .loader import (
    clear_settings_cache,
    get_db_settings,
    get_event_settings,
    get_idempotency_settings,
    get_logging_settings,
    get_outbox_settings,
)
from .logs import LoggingSettings
from .outbox import OutboxSettings

__all__ = [
    "DatabaseSettings",
    "EventSettings",
    "IdempotencySettings",
    "LoggingSettings",
    "OutboxSettings",
    "clear_settings_cache",
    "get_db_settings",
    "get_event_settings",
    "get_idempotency_settings",
    "get_logging_settings",
    "get_outbox_settings",
]
