"""Time normalisation and validation utilities"""
from datetime import datetime, timezone
from typing import Optional


def to_naive_utc(value: datetime) -> datetime:
    """
    Normalise to naive UTC with millisecond resolution.

    Timestamps are stored naive in UTC; equality between two scheduled times
    is decided on the truncated value.
    """
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.replace(microsecond=(value.microsecond // 1000) * 1000)


def utcnow_ms() -> datetime:
    return to_naive_utc(datetime.utcnow())


def validate_in_future(value: datetime, message: str = "Scheduled time must be in the future") -> datetime:
    """Normalise ``value`` and require it to be strictly after now"""
    value = to_naive_utc(value)
    if value <= utcnow_ms():
        raise ValueError(message)
    return value


def validate_date_range(start: Optional[datetime], end: Optional[datetime]) -> None:
    if start is not None and end is not None and to_naive_utc(end) < to_naive_utc(start):
        raise ValueError("End date must be after start date")


def format_utc(value: Optional[datetime]) -> Optional[str]:
    """ISO 8601 with a trailing Z for naive UTC values"""
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.isoformat(timespec="milliseconds") + "Z"
