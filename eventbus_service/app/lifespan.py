"""Event bus lifespan management.

Startup Order:
1. Logging - always runs first
2. Bus construction and database initialization
3. Event catalog registration
4. Outbox worker - only when requested

Shutdown Order: Reverse of startup (worker stops first, logging flushes last)
"""

from __future__ import annotations

from contextlib import asynccontextmanager
import logging
from typing import TYPE_CHECKING, Any

from eventbus_service.app.bus import Bus
from eventbus_service.core.events.catalog import register_catalog
from eventbus_service.core.settings import get_logging_settings
from eventbus_service.infra.logging import setup_logging, shutdown as shutdown_logging

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(
    *,
    start_worker: bool = True,
    register_builtin_events: bool = True,
    **bus_kwargs: Any,
) -> AsyncIterator[Bus]:
    """Run a fully wired bus for the duration of the block.

    Args:
        start_worker: Start the outbox worker on entry
        register_builtin_events: Register the built-in event catalog
        **bus_kwargs: Passed to :meth:`Bus.from_settings`

    Example:
        async with lifespan() as bus:
            bus.on("tenant.created", send_welcome_email)
            await serve(bus)
    """
    log_settings = get_logging_settings()
    setup_logging(log_settings=log_settings)
    logger.info("Event bus starting", extra={"service": log_settings.service_name})

    bus = Bus.from_settings(**bus_kwargs)
    if register_builtin_events:
        register_catalog(bus.registry)

    try:
        await bus.init(start_worker=start_worker)
        yield bus
    finally:
        try:
            await bus.shutdown()
        except Exception:
            logger.exception("Error during event bus shutdown")
        logger.info("Event bus stopped")
        shutdown_logging()


__all__ = ["lifespan"]
