"""Outbox worker settings."""

from __future__ import annotations

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class OutboxSettings(BaseSettings):
    """Outbox polling, retry and backoff configuration.

    Environment variables use OUTBOX_ prefix.
    Example: OUTBOX_POLL_INTERVAL=0.5, OUTBOX_MAX_RETRIES=8

    Retry delays follow ``min(base_retry_delay * 2**attempts, max_retry_delay)``
    with ``jitter_ratio`` of uniform jitter applied on top.
    """

    # ─────────────────────────────────────────────────────
    # Polling
    # ─────────────────────────────────────────────────────
    poll_interval: float = Field(
        default=1.0,
        gt=0.0,
        le=3600.0,
        description="Seconds to sleep between polls when the last batch was not full",
    )
    batch_size: int = Field(
        default=10,
        ge=1,
        le=10_000,
        description="Maximum entries claimed per poll",
    )

    # ─────────────────────────────────────────────────────
    # Retry policy
    # ─────────────────────────────────────────────────────
    max_retries: int = Field(
        default=5,
        ge=1,
        le=1000,
        description="Delivery attempts before an entry is dead-lettered",
    )
    base_retry_delay: float = Field(
        default=1.0,
        gt=0.0,
        description="Base backoff delay in seconds",
    )
    max_retry_delay: float = Field(
        default=60.0,
        gt=0.0,
        description="Upper bound for the backoff delay in seconds",
    )
    jitter_ratio: float = Field(
        default=0.1,
        ge=0.0,
        lt=1.0,
        description="Relative jitter applied to each delay (0.1 = +/-10%)",
    )

    claim_timeout: float = Field(
        default=300.0,
        gt=0.0,
        description="Seconds a claimed entry stays invisible before another worker may reclaim it",
    )

    # ─────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────
    shutdown_timeout: float = Field(
        default=30.0,
        ge=0.0,
        description="Seconds stop() waits for the in-flight batch before cancelling",
    )
    error_backoff_multiplier: float = Field(
        default=2.0,
        ge=1.0,
        description="poll_interval multiplier applied after a failed poll cycle",
    )
    metrics_interval: float = Field(
        default=15.0,
        ge=0.0,
        description="Seconds between outbox depth gauge refreshes in the loop (0 = every cycle)",
    )

    @model_validator(mode="after")
    def _check_delays(self) -> OutboxSettings:
        if self.base_retry_delay > self.max_retry_delay:
            msg = "base_retry_delay must not exceed max_retry_delay"
            raise ValueError(msg)
        return self

    model_config = SettingsConfigDict(
        env_prefix="OUTBOX_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        frozen=True,
        extra="ignore",
        env_ignore_empty=True,
    )
