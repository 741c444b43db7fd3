"""Recurring ride templates: occurrence rules, scheduling and the polling runner."""

from .rules import (
    Frequency,
    Occurrence,
    RecurrenceRule,
    RecurringTemplate,
    first_occurrence,
    next_occurrence,
)

__all__ = [
    "Frequency",
    "Occurrence",
    "RecurrenceRule",
    "RecurringTemplate",
    "first_occurrence",
    "next_occurrence",
]
