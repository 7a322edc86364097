"""
Day-bucket helpers.

All timestamps in the engine are naive UTC datetimes, the way they are stored.
"""

from datetime import date, datetime, timedelta, timezone
from typing import List, Tuple, Union

DateLike = Union[date, datetime]

EPOCH = datetime(1970, 1, 1)


def utcnow() -> datetime:
    """Current time as a naive UTC datetime"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_datetime(value: DateLike) -> datetime:
    """Normalize a date or (possibly aware) datetime to naive UTC"""
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            return value.astimezone(timezone.utc).replace(tzinfo=None)
        return value
    return datetime(value.year, value.month, value.day)


def day_floor(value: DateLike) -> datetime:
    """Midnight of the day containing ``value``"""
    dt = to_datetime(value)
    return datetime(dt.year, dt.month, dt.day)


def day_ceil(value: DateLike) -> datetime:
    """Midnight of the following day (exclusive upper bound)"""
    return day_floor(value) + timedelta(days=1)


def day_bounds(value: DateLike) -> Tuple[datetime, datetime]:
    """Half-open ``[min, max)`` window covering one day"""
    floor = day_floor(value)
    return floor, floor + timedelta(days=1)


def epoch_seconds(value: DateLike) -> int:
    return int((to_datetime(value) - EPOCH).total_seconds())


def last_n_days(n: int, now: DateLike) -> List[datetime]:
    """Day floors for the last ``n`` days ending today, oldest first"""
    today = day_floor(now)
    return [today - timedelta(days=offset) for offset in range(n - 1, -1, -1)]
