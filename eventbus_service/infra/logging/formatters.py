"""Log formatters for event bus records."""

from __future__ import annotations

from datetime import UTC, datetime
import json
import logging
from typing import Any

# Attributes every LogRecord carries; anything else came from extra= or the log context
_STANDARD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}

# Event fields are written right after the header so they line up when scanning
_EVENT_KEYS = ("event_id", "event_type", "outbox_id", "attempts", "scope_id", "correlation_id")


def _utc_timestamp(created: float) -> str:
    return (
        datetime.fromtimestamp(created, tz=UTC)
        .isoformat(timespec="milliseconds")
        .replace("+00:00", "Z")
    )


class JSONFormatter(logging.Formatter):
    """One JSON object per line.

    The header is ``timestamp``, ``level``, ``logger`` and ``message``, followed
    by any static fields, then event fields such as ``event_id`` or
    ``outbox_id``, then every other ``extra=`` field. Tracebacks are escaped
    so a record never spans lines.

    Example:
        {"timestamp": "2025-01-01T00:00:00.123Z", "level": "WARNING",
         "logger": "eventbus_service.infra.events.outbox.processor",
         "message": "Delivery failed, scheduled for retry",
         "service": "eventbus-service", "event_id": "evt_0190...", "attempts": 2}

    Args:
        static: Fields added to every record, e.g. ``{"service": "billing"}``
    """

    def __init__(self, static: dict[str, Any] | None = None) -> None:
        super().__init__()
        self.static = dict(static or {})

    def format(self, record: logging.LogRecord) -> str:
        data: dict[str, Any] = {
            "timestamp": _utc_timestamp(record.created),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **self.static,
        }

        extras = {k: v for k, v in vars(record).items() if k not in _STANDARD_ATTRS}
        for key in _EVENT_KEYS:
            if key in extras:
                data[key] = extras.pop(key)
        for key, value in extras.items():
            data.setdefault(key, value)

        if record.exc_info:
            data["exception"] = self.formatException(record.exc_info).replace("\n", "\\n")
        if record.stack_info:
            data["stack_trace"] = record.stack_info.replace("\n", "\\n")

        return json.dumps(data, ensure_ascii=False, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable lines with the event id appended when present."""

    def __init__(self) -> None:
        super().__init__("%(asctime)s %(levelname)-8s %(name)s %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        event_id = getattr(record, "event_id", None)
        return f"{line} [{event_id}]" if event_id else line


__all__ = ["JSONFormatter", "TextFormatter"]
