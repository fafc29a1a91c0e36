"""Cursor-based pagination helpers."""

from __future__ import annotations

from .cursor import CursorCodec, CursorData, decode_seek_cursor, encode_seek_cursor

__all__ = ["CursorCodec", "CursorData", "decode_seek_cursor", "encode_seek_cursor"]
