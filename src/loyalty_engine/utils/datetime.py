"""Date-time helpers; the store keeps naive UTC timestamps."""

from datetime import datetime, timedelta, timezone


def utcnow() -> datetime:
    """Return the current UTC time without tzinfo, matching stored columns."""

    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime | None) -> datetime | None:
    """Normalise an aware or naive timestamp to naive UTC."""

    if value is None:
        return None
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def trailing_window_start(now: datetime, hours: int = 24) -> datetime:
    """Return the start of the trailing window ending at ``now``."""

    return now - timedelta(hours=hours)
