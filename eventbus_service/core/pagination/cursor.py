"""Cursor encoding and decoding for seek pagination.

Cursors are opaque strings that encode the position in a result set: the
values of the sort fields of the last row returned. The next query seeks
directly past that row, so pages stay stable while rows are added.

The cursor format is:
1. JSON object with sort field values
2. Base64 URL-safe encoded

Example cursor payload:
    {"v": {"failed_at": "2025-01-15T10:30:00+00:00", "id": "42"}, "d": "forward"}
"""

from __future__ import annotations

import base64
from datetime import datetime
import json
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from eventbus_service.core.exceptions import InvalidCursorError


class CursorData(BaseModel):
    """Internal representation of cursor data.

    Attributes:
        values: Dictionary mapping sort field names to their values
        direction: Pagination direction (only forward paging is produced)
    """

    values: dict[str, Any] = Field(description="Sort field values for seeking")
    direction: Literal["forward", "backward"] = Field(
        default="forward",
        description="Pagination direction",
    )

    model_config = ConfigDict(frozen=True)


class CursorCodec:
    """Encode and decode pagination cursors.

    Usage:
        cursor = CursorCodec.encode(CursorData(values={"failed_at": ts, "id": "42"}))
        data = CursorCodec.decode(cursor)
        data.values  # {"failed_at": "2025-01-15T10:30:00+00:00", "id": "42"}
    """

    @staticmethod
    def encode(data: CursorData) -> str:
        """Encode cursor data to an opaque URL-safe string."""
        serialized = {
            "v": {
                key: value.isoformat() if isinstance(value, datetime) else value
                for key, value in data.values.items()
            },
            "d": data.direction,
        }
        json_str = json.dumps(serialized, separators=(",", ":"))
        return base64.urlsafe_b64encode(json_str.encode()).decode()

    @staticmethod
    def decode(cursor: str) -> CursorData:
        """Decode a cursor string.

        Raises:
            InvalidCursorError: If the cursor is not valid base64 JSON of the
                expected shape
        """
        try:
            json_str = base64.urlsafe_b64decode(cursor.encode()).decode()
            payload = json.loads(json_str)
            if not isinstance(payload, dict):
                msg = "cursor payload is not an object"
                raise TypeError(msg)
            return CursorData(
                values=payload.get("v", {}),
                direction=payload.get("d", "forward"),
            )
        except (ValueError, TypeError) as e:
            raise InvalidCursorError(f"Invalid cursor: {e}") from e


def encode_seek_cursor(failed_at: datetime, entry_id: str) -> str:
    """Cursor pointing after the row with the given (failed_at, id) key."""
    return CursorCodec.encode(CursorData(values={"failed_at": failed_at, "id": entry_id}))


def decode_seek_cursor(cursor: str) -> tuple[datetime, str]:
    """Decode a cursor produced by :func:`encode_seek_cursor`.

    Raises:
        InvalidCursorError: If the cursor is malformed or lacks the seek key
    """
    values = CursorCodec.decode(cursor).values
    try:
        failed_at = datetime.fromisoformat(values["failed_at"])
        entry_id = str(values["id"])
    except (KeyError, TypeError, ValueError) as e:
        raise InvalidCursorError(f"Invalid cursor: {e}") from e
    return failed_at, entry_id


__all__ = ["CursorCodec", "CursorData", "decode_seek_cursor", "encode_seek_cursor"]
