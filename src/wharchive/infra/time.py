"""Time utilities for consistent timestamp handling."""

from datetime import datetime, timezone

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def utc_now() -> datetime:
    """Return current UTC timestamp (timezone-aware)."""
    return datetime.now(timezone.utc)


def from_epoch_seconds(value: int | float | str) -> datetime:
    """Convert a gateway epoch timestamp (seconds) to an aware UTC datetime.

    Raises:
        ValueError: If value is not numeric.
    """
    return datetime.fromtimestamp(float(value), tz=timezone.utc)


def to_epoch_seconds(value: datetime) -> int:
    """Convert an aware datetime to whole epoch seconds."""
    return int(value.timestamp())


def ensure_utc(value: datetime) -> datetime:
    """Return value as an aware datetime, reading a naive one as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
