"""Event envelope and payload base class.

Every emitted event is an :class:`Event` envelope: the event ``type`` name,
the validated ``payload`` as a plain JSON-compatible dict, and
:class:`EventMeta` stamped by the emitter. Payload schemas are pydantic
models deriving from :class:`EventPayload`; the runtime string map from type
name to schema lives in the registry, so envelopes survive storage
round-trips without importing the schema class.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, ClassVar, TypeVar

from pydantic import BaseModel, ConfigDict, Field
from uuid_utils import uuid7

EVENT_ID_PREFIX = "evt_"

PayloadT = TypeVar("PayloadT", bound=BaseModel)


def generate_event_id() -> str:
    """Generate a time-sortable event id (``evt_`` + UUID v7 hex)."""
    return f"{EVENT_ID_PREFIX}{uuid7().hex}"


class EventPayload(BaseModel):
    """Base class for event payload schemas.

    Subclasses may declare ``event_type`` so they can be registered without
    repeating the name, and ``event_version`` for schema evolution.

    Example:
        class UserCreated(EventPayload):
            event_type: ClassVar[str] = "user.created"

            user_id: str
            email: str

        registry.register(UserCreated)
    """

    event_type: ClassVar[str | None] = None
    event_version: ClassVar[int] = 1

    model_config = ConfigDict(
        frozen=True,
        str_strip_whitespace=True,
        extra="forbid",
    )


class EventMeta(BaseModel):
    """Metadata stamped on every event at emission time.

    Attributes:
        event_id: Unique, time-sortable identifier (``evt_`` + UUID v7)
        timestamp: When the event was emitted (UTC)
        schema_version: Version of the payload schema the event was validated against
        source: Producer name ("kernel" unless the producer passes one)
        correlation_id: Request/trace correlation from the ambient scope
        scope_type: Kind of scope the event belongs to (e.g. "tenant")
        scope_id: Identifier of that scope (e.g. the tenant id)
    """

    event_id: str = Field(default_factory=generate_event_id)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    schema_version: int = Field(default=1, ge=1)
    source: str = "kernel"
    correlation_id: str | None = None
    scope_type: str | None = None
    scope_id: str | None = None

    model_config = ConfigDict(frozen=True, extra="forbid")


class Event(BaseModel):
    """Immutable event envelope.

    Attributes:
        type: Registered event type name (e.g. "credits.grant_requested")
        payload: Validated, JSON-compatible payload
        meta: Emission metadata
    """

    type: str
    payload: dict[str, Any]
    meta: EventMeta

    model_config = ConfigDict(frozen=True, extra="forbid")

    @property
    def event_id(self) -> str:
        return self.meta.event_id

    def parse(self, schema: type[PayloadT]) -> PayloadT:
        """Return the payload as an instance of ``schema``."""
        return schema.model_validate(self.payload)

    def with_correlation(self, correlation_id: str) -> Event:
        """Create a copy of this event with a correlation ID."""
        return self.model_copy(
            update={"meta": self.meta.model_copy(update={"correlation_id": correlation_id})}
        )


__all__ = [
    "EVENT_ID_PREFIX",
    "Event",
    "EventMeta",
    "EventPayload",
    "generate_event_id",
]
