"""
Shared utility types for jobflow.

Timestamp helpers used by models, stores and the clock. All timestamps
are timezone-aware UTC datetimes and serialize to ISO 8601 strings.
"""

from datetime import datetime, timezone
from typing import Any, Optional


def utc_now() -> datetime:
    """Get the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class ParseDatetimeError(ValueError):
    """Structured parse failure for ISO datetime strings."""

    def __init__(self, value: str, cause: Exception):
        super().__init__(f"Invalid ISO datetime string: {value!r}")
        self.value = value
        self.cause = cause


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse an ISO datetime string (or pass through a datetime).

    Naive values are assumed to be UTC.

    Raises:
        ParseDatetimeError: If the string is not valid ISO 8601
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except (TypeError, ValueError) as exc:
            raise ParseDatetimeError(str(value), exc) from exc
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def format_datetime(value: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime to ISO 8601, passing None through."""
    return value.isoformat() if value else None


def iso_week_key(value: datetime) -> str:
    """Return the ISO week a timestamp falls in, as 'YYYY-Www'.

    Weeks start on Monday 00:00 UTC.
    """
    year, week, _ = value.astimezone(timezone.utc).isocalendar()
    return f"{year}-W{week:02d}"
