"""Time and datetime utilities."""

from datetime import date, datetime, timezone


def utc_now() -> datetime:
    """Get current UTC datetime.

    Returns:
        Current datetime in UTC timezone
    """
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime | None) -> datetime | None:
    """Attach UTC to a naive datetime read back from the database.

    SQLite drops the offset on storage; every datetime the service writes
    is UTC, so a naive value is interpreted as UTC.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_datetime(dt: datetime, fmt: str = "%Y-%m-%dT%H:%M:%SZ") -> str:
    """Format datetime to ISO string.

    Args:
        dt: Datetime to format
        fmt: Format string (default ISO 8601)

    Returns:
        Formatted datetime string
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime(fmt)


def parse_date(value: str) -> date:
    """Parse a strict YYYY-MM-DD string.

    Raises:
        ValueError: If the string is not a calendar date in that format
    """
    if len(value) != 10:
        raise ValueError(f"Could not parse date: {value}")
    return datetime.strptime(value, "%Y-%m-%d").date()


def start_of_day(day: date) -> datetime:
    """Midnight UTC at the start of the given date."""
    return datetime(day.year, day.month, day.day, tzinfo=timezone.utc)
