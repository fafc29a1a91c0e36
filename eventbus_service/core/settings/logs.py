"""Logging settings for the event bus process."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


class LoggingSettings(BaseSettings):
    """Structured logging configuration.

    Environment variables use the LOG_ prefix, e.g. ``LOG_LEVEL=DEBUG``,
    ``LOG_JSON=false`` or ``LOG_FILE_ENABLED=true``.
    """

    service_name: str = Field(
        default="eventbus-service",
        description="Value of the static ``service`` field on JSON records",
    )
    level: LogLevel = Field(default="INFO", description="Root logger level")
    console_level: LogLevel | None = Field(
        default=None,
        description="Console handler level; falls back to ``level``",
    )
    library_level: LogLevel = Field(
        default="WARNING",
        description="Level for SQLAlchemy and aiosqlite loggers, which are chatty at INFO",
    )
    json_logs: bool = Field(
        default=True,
        alias="json",
        description="Write JSON Lines instead of plain text",
    )

    console_enabled: bool = Field(default=True, description="Log to stderr")
    file_enabled: bool = Field(default=False, description="Also log to a rotating file")
    file_path: Path = Field(
        default=Path("logs/eventbus-service.jsonl"),
        description="Log file location, used only when file_enabled is set",
    )
    file_max_bytes: int = Field(default=10 * 1024 * 1024, ge=1024)
    file_backup_count: int = Field(default=5, ge=0, le=100)

    include_context: bool = Field(
        default=True,
        description="Copy event and scope context (event_id, scope_id, ...) onto records",
    )
    capture_warnings: bool = Field(
        default=True,
        description="Route the ``warnings`` module through logging",
    )

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        frozen=True,
        extra="ignore",
        populate_by_name=True,
        env_ignore_empty=True,
    )

    @field_validator("level", "console_level", "library_level", mode="before")
    @classmethod
    def _upper(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value

    @property
    def effective_console_level(self) -> LogLevel:
        return self.console_level or self.level

    def to_logging_kwargs(self) -> dict[str, Any]:
        """Keyword arguments for :func:`configure_logging`."""
        return {
            "service_name": self.service_name,
            "log_level": self.level,
            "console_level": self.effective_console_level,
            "library_level": self.library_level,
            "json_logs": self.json_logs,
            "console_enabled": self.console_enabled,
            "file_path": str(self.file_path) if self.file_enabled else None,
            "file_max_bytes": self.file_max_bytes,
            "file_backup_count": self.file_backup_count,
            "include_context": self.include_context,
            "capture_warnings": self.capture_warnings,
        }
