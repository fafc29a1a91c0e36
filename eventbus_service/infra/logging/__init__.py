"""Structured logging: dictConfig setup, JSONL formatter and log context."""

from __future__ import annotations

from .config import configure_logging, setup_logging, shutdown
from .context import (
    ContextInjectingFilter,
    clear_log_context,
    get_log_context,
    log_context,
    remove_from_log_context,
    set_log_context,
)
from .formatters import JSONFormatter, TextFormatter

__all__ = [
    "ContextInjectingFilter",
    "JSONFormatter",
    "TextFormatter",
    "clear_log_context",
    "configure_logging",
    "get_log_context",
    "log_context",
    "remove_from_log_context",
    "set_log_context",
    "setup_logging",
    "shutdown",
]
