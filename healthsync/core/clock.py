"""Timestamp helpers.

Synced rows carry ISO8601 UTC strings with millisecond precision
(``2024-01-10T00:00:00.000Z``); changes on the wire carry epoch milliseconds.
"""

from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]

EPOCH_CURSOR = "1970-01-01T00:00:00Z"


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    """Format a datetime as ISO8601 UTC with millisecond precision."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def parse_iso(value: str) -> datetime:
    """Parse an ISO8601 string; naive values are taken as UTC."""
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def to_ms(dt: datetime) -> int:
    """Epoch milliseconds for a datetime."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


def iso_to_ms(value: str) -> int:
    return to_ms(parse_iso(value))


def ms_to_iso(ms: int) -> str:
    return to_iso(datetime.fromtimestamp(ms / 1000, tz=timezone.utc))


def to_naive_utc(dt: datetime) -> datetime:
    """Naive UTC datetime for ``DateTime`` columns; naive input is already UTC."""
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)
