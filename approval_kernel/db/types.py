"""
Module: approval_kernel.db.types
Responsibility: Column type decorators shared by every approval model.
Architecture position: Kernel > DB.  MUST NOT import from models/, domain/ or
    services/.

Invariants enforced:
    - Timestamps round-trip as timezone-aware UTC datetimes on every backend.
      SQLite stores DATETIME without an offset; UTCDateTime re-attaches UTC
      on load and normalizes to UTC on store.
    - Naive datetimes are rejected on bind.

Failure modes:
    - ValueError when a naive datetime is bound to a UTCDateTime column.
"""

from datetime import UTC

from sqlalchemy import DateTime
from sqlalchemy.types import TypeDecorator


class UTCDateTime(TypeDecorator):
    """DateTime(timezone=True) that always hands back aware UTC values."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError(f"Naive datetime cannot be stored: {value!r}")
        value = value.astimezone(UTC)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)
