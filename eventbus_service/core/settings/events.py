"""Event emitter settings."""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class EventSettings(BaseSettings):
    """In-process event emitter configuration.

    Environment variables use EVENTS_ prefix.
    Example: EVENTS_MAX_HANDLERS_PER_TYPE=200, EVENTS_STRICT_HANDLER_LIMIT=true
    """

    default_source: str = Field(
        default="kernel",
        min_length=1,
        max_length=100,
        description="Source stamped on events when the producer does not pass one",
    )

    # ──────────────────────────────────────────────────────────────
    # Subscription limits
    # ──────────────────────────────────────────────────────────────

    max_handlers_per_type: int = Field(
        default=100,
        ge=1,
        le=100_000,
        description="Handler count per event type that indicates a subscription leak",
    )
    strict_handler_limit: bool = Field(
        default=False,
        description="Raise instead of warning when max_handlers_per_type is exceeded",
    )
    leak_warning_ratio: float = Field(
        default=0.8,
        gt=0.0,
        le=1.0,
        description="Fraction of max_handlers_per_type at which stats report leak risk",
    )

    # ──────────────────────────────────────────────────────────────
    # Fan-out
    # ──────────────────────────────────────────────────────────────

    handler_concurrency: int = Field(
        default=32,
        ge=1,
        le=10_000,
        description="Maximum handlers running at once across all emits",
    )
    drain_timeout: float = Field(
        default=10.0,
        ge=0.0,
        le=600.0,
        description="Seconds to wait for in-flight handlers on shutdown before cancelling",
    )

    model_config = SettingsConfigDict(
        env_prefix="EVENTS_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        frozen=True,
        extra="ignore",
        env_ignore_empty=True,
    )
