# storefront/utils/timeutils.py
from datetime import datetime, timezone


def utcnow() -> datetime:
    """Naive UTC timestamp, the representation stored in every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: datetime) -> datetime:
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def isoformat(value: datetime):
    if value is None:
        return None
    return as_naive_utc(value).isoformat() + "+00:00"


def from_timestamp(seconds):
    if seconds is None:
        return None
    return datetime.fromtimestamp(int(seconds), tz=timezone.utc).replace(tzinfo=None)
