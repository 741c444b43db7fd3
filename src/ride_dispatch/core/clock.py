"""Time source abstraction so TTLs and schedules can be driven in tests."""

from datetime import UTC, datetime
from typing import Protocol


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(UTC)


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    """Wall-clock time in UTC."""

    def now(self) -> datetime:
        return utc_now()
