"""Compatibility shims for Python version differences and UTC helpers."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum

try:  # Python 3.11+
    from datetime import UTC  # type: ignore[attr-defined]
except ImportError:  # Python 3.10
    UTC = timezone(timedelta(0))

try:  # Python 3.11+
    from enum import StrEnum  # type: ignore[attr-defined]
except ImportError:  # Python 3.10

    class StrEnum(str, Enum):
        """String-valued enum base compatible with Python 3.10+."""

        def __str__(self) -> str:
            return str(self.value)


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes and convert aware ones to UTC.

    SQLite and BSON both hand back naive datetimes that were stored as UTC.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)
