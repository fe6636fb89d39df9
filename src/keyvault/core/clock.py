# Core Module - Timestamp helpers
#
# All persisted timestamps are ISO 8601 strings in UTC. Components accept
# an optional ``clock`` callable so tests can move time forward.

import math
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Union

Clock = Callable[[], datetime]

SECONDS_PER_DAY = 24 * 60 * 60


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    """Render a datetime as an ISO string, treating naive values as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def parse_timestamp(value: Union[str, datetime]) -> datetime:
    """Parse an ISO timestamp into an aware UTC datetime.

    Accepts the trailing ``Z`` form as well as explicit offsets.
    Naive inputs are assumed to be UTC.
    """
    if isinstance(value, datetime):
        parsed = value
    else:
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def add_days(value: datetime, days: int) -> datetime:
    return value + timedelta(days=days)


def days_between(later: datetime, earlier: datetime) -> int:
    """Whole days from ``earlier`` to ``later``, rounded up.

    Negative when ``later`` is before ``earlier``.
    """
    return math.ceil((later - earlier).total_seconds() / SECONDS_PER_DAY)


def resolve_clock(clock: Optional[Clock]) -> Clock:
    return clock if clock is not None else utcnow
