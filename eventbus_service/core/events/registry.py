"""Event schema registry.

The registry maps event type names to pydantic payload schemas. It answers
"is this type known" and "is this payload valid", and is the only place the
runtime string map from type name to schema class exists.

Usage:
    registry = SchemaRegistry()

    class UserCreated(EventPayload):
        event_type: ClassVar[str] = "user.created"
        user_id: str

    registry.register(UserCreated)

    # Or with an explicit name
    registry.register("user.deleted", UserDeleted)

    # Or as a decorator
    @registry.event("order.placed")
    class OrderPlaced(EventPayload):
        order_id: str

    payload = registry.validate("user.created", {"user_id": "123"})
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, TypeVar, overload

from pydantic import BaseModel, ValidationError

from eventbus_service.core.exceptions import EventValidationError, UnregisteredEventError

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

logger = logging.getLogger(__name__)

SchemaT = TypeVar("SchemaT", bound=BaseModel)


class SchemaRegistry:
    """Registry of event payload schemas keyed by event type.

    Registration is expected during startup. Re-registering the same class
    for a type is a no-op; registering a different class replaces the
    previous one and logs a warning.
    """

    def __init__(self) -> None:
        self._schemas: dict[str, type[BaseModel]] = {}

    @overload
    def register(self, event_type: type[SchemaT], schema: None = None) -> type[SchemaT]: ...

    @overload
    def register(self, event_type: str, schema: type[SchemaT]) -> type[SchemaT]: ...

    def register(
        self,
        event_type: str | type[SchemaT],
        schema: type[SchemaT] | None = None,
    ) -> type[SchemaT]:
        """Register a payload schema for an event type.

        Args:
            event_type: Event type name, or a schema class that declares
                ``event_type`` itself
            schema: Schema class when ``event_type`` is a name

        Returns:
            The schema class (unchanged)

        Raises:
            ValueError: If no event type name can be determined
        """
        if isinstance(event_type, str):
            if schema is None:
                msg = f"A schema class is required to register '{event_type}'"
                raise ValueError(msg)
            name, cls = event_type, schema
        else:
            cls = event_type
            name = getattr(cls, "event_type", None)
            if not name:
                msg = f"{cls.__name__} must define 'event_type' or be registered by name"
                raise ValueError(msg)

        existing = self._schemas.get(name)
        if existing is cls:
            return cls
        if existing is not None:
            logger.warning(
                "Replacing registered event schema",
                extra={
                    "event_type": name,
                    "previous": existing.__name__,
                    "schema": cls.__name__,
                },
            )

        self._schemas[name] = cls
        logger.debug(
            "Registered event type",
            extra={
                "event_type": name,
                "version": self._version_of(cls),
                "schema": cls.__name__,
            },
        )
        return cls

    def event(self, event_type: str) -> Callable[[type[SchemaT]], type[SchemaT]]:
        """Decorator form of :meth:`register` with an explicit type name."""

        def _register(cls: type[SchemaT]) -> type[SchemaT]:
            return self.register(event_type, cls)

        return _register

    def get(self, event_type: str) -> type[BaseModel] | None:
        """Get the schema registered for ``event_type``, or None."""
        return self._schemas.get(event_type)

    def is_registered(self, event_type: str) -> bool:
        return event_type in self._schemas

    def schema_version(self, event_type: str) -> int | None:
        """Get the schema version for an event type, or None if unknown."""
        schema = self._schemas.get(event_type)
        if schema is None:
            return None
        return self._version_of(schema)

    def validate(self, event_type: str, payload: Mapping[str, Any] | BaseModel) -> dict[str, Any]:
        """Validate a payload against the schema of ``event_type``.

        Pydantic coercions apply; the result is the coerced payload in JSON
        mode so it can be persisted as-is.

        Args:
            event_type: Registered event type name
            payload: Mapping or model instance to validate

        Returns:
            The validated payload as a JSON-compatible dict

        Raises:
            UnregisteredEventError: If ``event_type`` has no schema
            EventValidationError: If the payload does not satisfy the schema
        """
        schema = self._schemas.get(event_type)
        if schema is None:
            raise UnregisteredEventError(event_type)

        if isinstance(payload, schema):
            model = payload
        else:
            data = payload.model_dump() if isinstance(payload, BaseModel) else payload
            try:
                model = schema.model_validate(data)
            except ValidationError as exc:
                raise EventValidationError(
                    event_type,
                    exc.errors(include_url=False, include_context=False),
                ) from exc

        return model.model_dump(mode="json")

    def list_types(self) -> list[str]:
        """List all registered event types."""
        return list(self._schemas)

    def __contains__(self, event_type: object) -> bool:
        return event_type in self._schemas

    def __len__(self) -> int:
        return len(self._schemas)

    def clear(self) -> None:
        """Clear all registrations (mainly for testing)."""
        self._schemas.clear()

    @staticmethod
    def _version_of(schema: type[BaseModel]) -> int:
        return int(getattr(schema, "event_version", 1))


__all__ = ["SchemaRegistry"]
