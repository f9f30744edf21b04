"""UTC helpers - timestamps are stored as naive UTC datetimes"""

from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize an aware datetime to naive UTC; naive values are assumed to already be UTC"""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def epoch_millis(value: Optional[datetime] = None) -> int:
    value = value or utcnow()
    return int(value.replace(tzinfo=timezone.utc).timestamp() * 1000)
