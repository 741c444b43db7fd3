"""Occurrence rules for recurring rides.

All computations are pure. ``time_of_day`` is wall-clock time in the
configured timezone; instants are returned in UTC.
"""

import calendar
from datetime import UTC, date, datetime, time, timedelta, tzinfo
from enum import Enum
from typing import Self

from pydantic import BaseModel, Field, model_validator


class Frequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class RecurrenceRule(BaseModel):
    """How often a template ride repeats and when it stops."""

    frequency: Frequency
    day_of_week: int | None = Field(default=None, ge=0, le=6, description="0=Monday")
    day_of_month: int | None = Field(default=None, ge=1, le=31)
    time_of_day: time
    end_date: datetime | None = None
    total_occurrences: int | None = Field(default=None, ge=1)

    @model_validator(mode="after")
    def validate_anchor(self) -> Self:
        if self.frequency == Frequency.WEEKLY and self.day_of_week is None:
            raise ValueError("weekly recurrence requires day_of_week")
        if self.frequency == Frequency.MONTHLY and self.day_of_month is None:
            raise ValueError("monthly recurrence requires day_of_month")
        if self.end_date is not None and self.end_date.tzinfo is None:
            raise ValueError("end_date must be timezone-aware")
        return self


# Recent instants kept on a template; enough to answer repeated materialize
# calls for the same instant without the document growing forever.
RECENT_OCCURRENCES = 20


class Occurrence(BaseModel):
    scheduled_for: datetime
    ride_id: str


class RecurringTemplate(RecurrenceRule):
    """Rule plus the scheduling state carried by a template ride."""

    next_occurrence: datetime
    remaining_occurrences: int | None = Field(default=None, ge=0)
    occurrences: list[Occurrence] = Field(default_factory=list)
    materialized_count: int = Field(default=0, ge=0)
    active: bool = True

    @classmethod
    def start(cls, rule: RecurrenceRule, first: datetime) -> "RecurringTemplate":
        template = cls(
            **rule.model_dump(),
            next_occurrence=first,
            remaining_occurrences=rule.total_occurrences,
        )
        if template.end_date is not None and first > template.end_date:
            template.active = False
        return template

    @property
    def rule(self) -> RecurrenceRule:
        return RecurrenceRule.model_validate(
            self.model_dump(include=set(RecurrenceRule.model_fields))
        )

    @property
    def is_inert(self) -> bool:
        if not self.active:
            return True
        if self.remaining_occurrences is not None and self.remaining_occurrences <= 0:
            return True
        return self.end_date is not None and self.next_occurrence > self.end_date

    def is_due(self, as_of: datetime) -> bool:
        return not self.is_inert and self.next_occurrence <= as_of

    def occurrence_at(self, scheduled_for: datetime) -> Occurrence | None:
        for occurrence in self.occurrences:
            if occurrence.scheduled_for == scheduled_for:
                return occurrence
        return None

    @property
    def latest_occurrence(self) -> Occurrence | None:
        return self.occurrences[-1] if self.occurrences else None

    def advance(self, scheduled_for: datetime, ride_id: str, tz: tzinfo) -> None:
        """Record a materialized instant and move to the next one.

        Only the most recent instants are kept; ``materialized_count`` keeps
        the total.
        """
        self.occurrences.append(Occurrence(scheduled_for=scheduled_for, ride_id=ride_id))
        del self.occurrences[:-RECENT_OCCURRENCES]
        self.materialized_count += 1
        if self.remaining_occurrences is not None:
            self.remaining_occurrences -= 1
        self.next_occurrence = next_occurrence(self.rule, scheduled_for, tz)
        if self.is_inert:
            self.active = False


def _at(day: date, rule: RecurrenceRule, tz: tzinfo) -> datetime:
    return datetime.combine(day, rule.time_of_day, tzinfo=tz).astimezone(UTC)


def _clamped(year: int, month: int, day_of_month: int) -> date:
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(day_of_month, last_day))


def _following_month(day: date) -> tuple[int, int]:
    if day.month == 12:
        return day.year + 1, 1
    return day.year, day.month + 1


def next_occurrence(rule: RecurrenceRule, previous: datetime, tz: tzinfo) -> datetime:
    """Occurrence that follows ``previous``.

    daily: next calendar day. weekly: next date on ``day_of_week``, a full
    week ahead when ``previous`` already falls on it. monthly: ``day_of_month``
    of the next month, clamped to that month's last day.
    """
    local_day = previous.astimezone(tz).date()

    if rule.frequency == Frequency.DAILY:
        return _at(local_day + timedelta(days=1), rule, tz)

    if rule.frequency == Frequency.WEEKLY:
        assert rule.day_of_week is not None
        days_ahead = (rule.day_of_week - local_day.weekday()) % 7 or 7
        return _at(local_day + timedelta(days=days_ahead), rule, tz)

    assert rule.day_of_month is not None
    year, month = _following_month(local_day)
    return _at(_clamped(year, month, rule.day_of_month), rule, tz)


def first_occurrence(rule: RecurrenceRule, after: datetime, tz: tzinfo) -> datetime:
    """Earliest occurrence at or after ``after``."""
    local_day = after.astimezone(tz).date()

    if rule.frequency == Frequency.DAILY:
        candidate = _at(local_day, rule, tz)
        if candidate < after:
            candidate = _at(local_day + timedelta(days=1), rule, tz)
        return candidate

    if rule.frequency == Frequency.WEEKLY:
        assert rule.day_of_week is not None
        days_ahead = (rule.day_of_week - local_day.weekday()) % 7
        candidate = _at(local_day + timedelta(days=days_ahead), rule, tz)
        if candidate < after:
            candidate = _at(local_day + timedelta(days=days_ahead + 7), rule, tz)
        return candidate

    assert rule.day_of_month is not None
    candidate = _at(_clamped(local_day.year, local_day.month, rule.day_of_month), rule, tz)
    if candidate < after:
        year, month = _following_month(local_day)
        candidate = _at(_clamped(year, month, rule.day_of_month), rule, tz)
    return candidate
