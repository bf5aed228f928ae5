"""Time helpers. All persisted timestamps are UTC ISO-8601 with milliseconds."""

from datetime import datetime, timedelta, timezone
from typing import Iterator, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Aware UTC datetime; naive values are taken to already be UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.") + (
        f"{value.microsecond // 1000:03d}Z"
    )


def parse_iso(value: str) -> datetime:
    """
    Parse an ISO-8601 timestamp or date into an aware UTC datetime.

    Raises ValueError for unparseable input.
    """
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_optional(value: Optional[str]) -> Optional[datetime]:
    return parse_iso(value) if value else None


def day_key(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%d")


def hour_key(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%d-%H")


def iter_days_desc(start: datetime, end: datetime) -> Iterator[str]:
    """Yield yyyy-mm-dd keys from end back to start, inclusive."""
    day = end.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
    first = start.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
    while day >= first:
        yield day_key(day)
        day -= timedelta(days=1)


def iter_hours_desc(start: datetime, end: datetime) -> Iterator[str]:
    """Yield yyyy-mm-dd-HH keys from end back to start, inclusive."""
    hour = end.astimezone(timezone.utc).replace(minute=0, second=0, microsecond=0)
    first = start.astimezone(timezone.utc).replace(minute=0, second=0, microsecond=0)
    while hour >= first:
        yield hour_key(hour)
        hour -= timedelta(hours=1)


def bucket_key(value: datetime, group_by: str) -> str:
    """
    Bin a timestamp into a UTC bucket label.

    day -> YYYY-MM-DD, week -> YYYY-MM-DD of the ISO week's Monday, month -> YYYY-MM
    """
    value = value.astimezone(timezone.utc)
    if group_by == "day":
        return value.strftime("%Y-%m-%d")
    if group_by == "week":
        monday = value - timedelta(days=value.weekday())
        return monday.strftime("%Y-%m-%d")
    if group_by == "month":
        return value.strftime("%Y-%m")
    raise ValueError(f"Unknown bucket: {group_by}")


def iter_buckets(start: datetime, end: datetime, group_by: str) -> Iterator[str]:
    """Yield every bucket label between start and end in ascending order."""
    current = start.astimezone(timezone.utc)
    last = bucket_key(end, group_by)
    seen = None
    while True:
        key = bucket_key(current, group_by)
        if key != seen:
            yield key
            seen = key
        if key >= last:
            return
        if group_by == "month":
            year, month = current.year + (current.month // 12), current.month % 12 + 1
            current = current.replace(year=year, month=month, day=1)
        elif group_by == "week":
            current = current + timedelta(days=7 - current.weekday())
        else:
            current = current + timedelta(days=1)
