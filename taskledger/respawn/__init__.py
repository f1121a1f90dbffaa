"""
Respawn Scheduler: recurrence rules and next-occurrence arithmetic.
"""

from .rules import (
    IntervalFrequency,
    MonthdaySet,
    NthWeekday,
    RecurrenceRule,
    SimpleFrequency,
    Unit,
    WeekdaySet,
    describe_rule,
    format_rule,
    normalize_rule,
    parse_rule,
)
from .scheduler import RespawnOutcome, RespawnScheduler, RespawnStatus, next_occurrence

__all__ = [
    "IntervalFrequency",
    "MonthdaySet",
    "NthWeekday",
    "RecurrenceRule",
    "RespawnOutcome",
    "RespawnScheduler",
    "RespawnStatus",
    "SimpleFrequency",
    "Unit",
    "WeekdaySet",
    "describe_rule",
    "format_rule",
    "next_occurrence",
    "normalize_rule",
    "parse_rule",
]
