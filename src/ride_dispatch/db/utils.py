"""Timestamp helpers for the SQLite columns.

Indexed datetime columns (``created_at``, ``next_occurrence``) are kept as
naive UTC so range queries compare like with like. The ride document JSON
keeps full aware timestamps.
"""

from datetime import UTC, datetime


def utc_now() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


def to_naive_utc(value: datetime | None) -> datetime | None:
    """Strip the zone from ``value`` after shifting it to UTC.

    Naive input is assumed to already be UTC and comes back as is.
    """
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)
