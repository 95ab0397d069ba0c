"""Time helpers shared by aggregation, decisions and deletion.

All instants are timezone-aware UTC datetimes. A *day* is an instant truncated to a
24h boundary in UTC; day keys are always produced by `truncate_day`.
"""

from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from typing import Iterator

DAY = timedelta(days=1)
EARLIEST_DAY = datetime.min.replace(tzinfo=timezone.utc)

# OpenTSDB duration units. `n` is a 30 day month, `y` a 365 day year.
_UNITS: dict[str, timedelta] = {
    "ms": timedelta(milliseconds=1),
    "s": timedelta(seconds=1),
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
    "d": timedelta(days=1),
    "w": timedelta(weeks=1),
    "n": timedelta(days=30),
    "y": timedelta(days=365),
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h|d|w|n|y)")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(t: datetime) -> datetime:
    if t.tzinfo is None:
        return t.replace(tzinfo=timezone.utc)
    return t.astimezone(timezone.utc)


def truncate_day(t: datetime) -> datetime:
    return as_utc(t).replace(hour=0, minute=0, second=0, microsecond=0)


def day_before(now: datetime, d: timedelta) -> datetime:
    """`truncate_day(now - d)`, clamped to the earliest representable day."""
    try:
        return truncate_day(as_utc(now) - d)
    except OverflowError:
        return EARLIEST_DAY


def from_unix(ts: int | float) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)


def to_unix(t: datetime) -> int:
    return int(as_utc(t).timestamp())


def parse_timestamp(raw: str) -> datetime:
    """Parse a `dps` key. Millisecond keys (13+ digits) are accepted as well."""
    value = int(str(raw).strip())
    if value > 10**11:
        return from_unix(value / 1000.0)
    return from_unix(value)


def parse_duration(raw: str) -> timedelta:
    """Parse an OpenTSDB style duration such as `30d`, `1y` or `1w2d`.

    Raises ValueError on anything else, including an empty string.
    """

    text = str(raw).strip()
    if not text:
        raise ValueError("empty duration")
    total = timedelta(0)
    pos = 0
    for m in _DURATION_PART.finditer(text):
        if m.start() != pos:
            break
        try:
            total += float(m.group(1)) * _UNITS[m.group(2)]
        except OverflowError as e:
            raise ValueError(f"duration out of range: {raw!r}") from e
        pos = m.end()
    if pos != len(text):
        raise ValueError(f"invalid duration: {raw!r}")
    return total


def format_duration(d: timedelta) -> str:
    secs = int(d.total_seconds())
    if secs and secs % 86400 == 0:
        return f"{secs // 86400}d"
    if secs and secs % 3600 == 0:
        return f"{secs // 3600}h"
    return f"{secs}s"


def iter_windows(start: datetime, end: datetime, breadth: timedelta) -> Iterator[tuple[datetime, datetime]]:
    """Yield consecutive `[lo, hi)` windows covering `[start, end)`.

    Each window is at most `breadth` wide; the last one is clamped to `end`.
    """

    if breadth <= timedelta(0):
        raise ValueError("breadth must be positive")
    lo = start
    while lo < end:
        hi = min(lo + breadth, end)
        yield lo, hi
        lo = hi
