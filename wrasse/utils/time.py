"""
Timestamp helpers.

Job records carry ISO-8601 UTC timestamps (``2014-01-02T03:04:05.678Z``).
Everything inside the daemon works with tz-aware UTC datetimes; this module
is the single conversion point.
"""

from datetime import datetime, timezone
from typing import Any, Callable, Optional

_UTC = timezone.utc

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Current time as a tz-aware UTC datetime."""
    return datetime.now(_UTC)


def ensure_utc(ts: datetime) -> datetime:
    """Validate that a datetime is tz-aware and convert to UTC.

    Raises:
        ValueError: If ts is naive (no tzinfo).
    """
    if ts.tzinfo is None:
        raise ValueError(
            "ensure_utc requires a tz-aware datetime, got naive. "
            "Hint: use datetime(..., tzinfo=timezone.utc) for UTC timestamps."
        )
    return ts.astimezone(_UTC)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse a record timestamp.

    Accepts ISO-8601 strings (with ``Z`` or an offset), epoch milliseconds,
    datetimes and None. Naive values are taken to be UTC.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=_UTC)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000.0, tz=_UTC)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=_UTC)
    raise ValueError(f"Unsupported timestamp: {value!r}")


def format_timestamp(ts: Optional[datetime]) -> Optional[str]:
    """Render a datetime the way job records store it (millisecond precision, Z)."""
    if ts is None:
        return None
    ts = ensure_utc(ts)
    return ts.strftime("%Y-%m-%dT%H:%M:%S.") + f"{ts.microsecond // 1000:03d}Z"
