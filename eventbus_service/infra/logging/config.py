"""Process-wide logging setup.

Records are enqueued by a single root ``QueueHandler`` and written by a
``QueueListener`` thread, so handler coroutines never block on log I/O.
The context filter sits on the ``QueueHandler`` because contextvars are only
visible in the task that emitted the record.
"""

from __future__ import annotations

import atexit
import logging
import logging.config
from logging.handlers import QueueHandler, QueueListener, RotatingFileHandler
from pathlib import Path
from queue import SimpleQueue
from typing import TYPE_CHECKING, Any

from .context import ContextInjectingFilter
from .formatters import JSONFormatter, TextFormatter

if TYPE_CHECKING:
    from eventbus_service.core.settings.logs import LoggingSettings

logger = logging.getLogger(__name__)

# Third-party loggers capped at ``library_level``
LIBRARY_LOGGERS = ("sqlalchemy.engine", "sqlalchemy.pool", "aiosqlite", "asyncio")

_listener: QueueListener | None = None
_configured = False


def shutdown() -> None:
    """Flush queued records and stop the listener thread (idempotent)."""
    global _listener

    if _listener is not None:
        _listener.stop()
        _listener = None


def setup_logging(
    log_settings: LoggingSettings | None = None,
    *,
    force: bool = False,
    **overrides: Any,
) -> None:
    """Configure logging from settings once per process.

    Args:
        log_settings: Settings to apply (``get_logging_settings()`` if omitted)
        force: Reconfigure even when already configured
        **overrides: Values that take precedence over the settings
    """
    global _configured

    if _configured and not force:
        return

    if log_settings is None:
        from eventbus_service.core.settings import get_logging_settings

        log_settings = get_logging_settings()

    configure_logging(**{**log_settings.to_logging_kwargs(), **overrides})
    _configured = True


def _output_handlers(
    *,
    json_logs: bool,
    service_name: str,
    console_enabled: bool,
    console_level: str,
    file_path: Path | None,
    file_level: str,
    file_max_bytes: int,
    file_backup_count: int,
) -> list[logging.Handler]:
    json_formatter = JSONFormatter(static={"service": service_name})
    handlers: list[logging.Handler] = []

    if console_enabled:
        console = logging.StreamHandler()
        console.setLevel(console_level)
        console.setFormatter(json_formatter if json_logs else TextFormatter())
        handlers.append(console)

    if file_path is not None:
        file_path.parent.mkdir(parents=True, exist_ok=True)
        rotating = RotatingFileHandler(
            file_path,
            maxBytes=file_max_bytes,
            backupCount=file_backup_count,
            encoding="utf-8",
        )
        rotating.setLevel(file_level)
        # Files are always JSON Lines
        rotating.setFormatter(json_formatter)
        handlers.append(rotating)

    return handlers


def configure_logging(
    log_level: str = "INFO",
    console_level: str | None = None,
    library_level: str = "WARNING",
    file_path: str | Path | None = None,
    json_logs: bool = True,
    console_enabled: bool = True,
    include_context: bool = True,
    capture_warnings: bool = True,
    file_max_bytes: int = 10 * 1024 * 1024,
    file_backup_count: int = 5,
    service_name: str = "eventbus-service",
) -> None:
    """Install the root queue handler and start a listener for the outputs.

    Calling it again replaces the previous configuration.

    Args:
        log_level: Root level
        console_level: Console handler level (``log_level`` if None)
        library_level: Level for SQLAlchemy, aiosqlite and asyncio loggers
        file_path: Rotating JSONL file; None disables file output
        json_logs: JSON Lines on the console instead of text
        console_enabled: Write to stderr
        include_context: Attach :class:`ContextInjectingFilter`
        capture_warnings: Route ``warnings`` through logging
        file_max_bytes: Rotation size
        file_backup_count: Rotated files kept
        service_name: Static ``service`` field on JSON records
    """
    global _listener

    level = log_level.upper()
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "root": {"level": level, "handlers": []},
            "loggers": {name: {"level": library_level.upper()} for name in LIBRARY_LOGGERS},
        }
    )
    logging.captureWarnings(capture_warnings)

    handlers = _output_handlers(
        json_logs=json_logs,
        service_name=service_name,
        console_enabled=console_enabled,
        console_level=(console_level or level).upper(),
        file_path=Path(file_path) if file_path else None,
        file_level=level,
        file_max_bytes=file_max_bytes,
        file_backup_count=file_backup_count,
    )

    shutdown()
    queue: SimpleQueue[logging.LogRecord] = SimpleQueue()
    queue_handler = QueueHandler(queue)
    if include_context:
        queue_handler.addFilter(ContextInjectingFilter())
    logging.getLogger().addHandler(queue_handler)

    _listener = QueueListener(queue, *handlers, respect_handler_level=True)
    _listener.start()
    atexit.register(shutdown)

    logger.debug(
        "Logging configured",
        extra={"level": level, "json_logs": json_logs, "outputs": len(handlers)},
    )


__all__ = ["LIBRARY_LOGGERS", "configure_logging", "setup_logging", "shutdown"]
