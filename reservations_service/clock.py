from datetime import datetime, timezone


def utcnow() -> datetime:
    """Current time as a naive UTC datetime, matching what the models store."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """
    Normalize a datetime to naive UTC.

    Aware values are converted to UTC first; naive values are assumed to
    already be UTC.
    """
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value
