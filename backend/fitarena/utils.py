from datetime import datetime, timezone


def utcnow() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Make a naive datetime timezone-aware (UTC). Already-aware datetimes pass through.

    The Motor client is opened with ``tz_aware=True``, so stored dates come
    back aware. Naive values still reach here from pydantic input and
    hand-built documents; treat them as UTC before comparing with utcnow().
    """
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def utc_day_start(dt: datetime) -> datetime:
    """Floor a datetime to 00:00 UTC of its calendar day."""
    dt = ensure_utc(dt).astimezone(timezone.utc)
    return dt.replace(hour=0, minute=0, second=0, microsecond=0)
