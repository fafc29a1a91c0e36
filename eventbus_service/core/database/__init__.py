"""Database base classes."""

from __future__ import annotations

from .base import NAMING_CONVENTION, Base, TimestampMixin, UTCDateTime, utcnow

__all__ = ["NAMING_CONVENTION", "Base", "TimestampMixin", "UTCDateTime", "utcnow"]
