"""Idempotency guard settings."""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class IdempotencySettings(BaseSettings):
    """Idempotency record lifetimes.

    Environment variables use IDEMPOTENCY_ prefix.
    Example: IDEMPOTENCY_TTL=86400, IDEMPOTENCY_LEASE_TTL=60
    """

    ttl: float = Field(
        default=7 * 24 * 3600,
        gt=0.0,
        description="Seconds a record is kept before it is treated as absent",
    )
    in_progress_timeout: float = Field(
        default=300.0,
        gt=0.0,
        description="Seconds after which an in_progress record is stale and can be reclaimed",
    )
    lease_ttl: float = Field(
        default=30.0,
        gt=0.0,
        description="Default lifetime of a TTL-only lease in seconds",
    )

    model_config = SettingsConfigDict(
        env_prefix="IDEMPOTENCY_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        frozen=True,
        extra="ignore",
        env_ignore_empty=True,
    )
