"""
Respawn Scheduler - materialises the next instance of a recurring task.

All calendar arithmetic is in UTC. next_occurrence() never returns a
timestamp at or before the one it searches from.
"""

import calendar
import logging
import sqlite3
from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta
from enum import Enum

from taskledger.errors import LedgerError, ValidationError
from taskledger.respawn.rules import (
    IntervalFrequency,
    MonthdaySet,
    NthWeekday,
    RecurrenceRule,
    SimpleFrequency,
    Unit,
    WeekdaySet,
    parse_rule,
)
from taskledger.timeline.models import EventKind, Lifecycle, Task
from taskledger.timeline.store import TimelineStore

logger = logging.getLogger(__name__)

# How far ahead month-based searches look before giving up
SEARCH_MONTHS = 13


# =============================================================================
# CALENDAR HELPERS
# =============================================================================


def add_months(day: date, months: int) -> date:
    """Shift by whole months, clamping to the last day (Jan 31 + 1 -> Feb 28/29)."""
    index = day.year * 12 + (day.month - 1) + months
    year, month = divmod(index, 12)
    month += 1
    last = calendar.monthrange(year, month)[1]
    return date(year, month, min(day.day, last))


def nth_weekday_of_month(year: int, month: int, nth: int, weekday: int) -> date | None:
    """Date of the nth weekday (nth=-1: last) in a month, or None if it does not exist."""
    last_day = calendar.monthrange(year, month)[1]
    if nth == -1:
        last = date(year, month, last_day)
        return last - timedelta(days=(last.weekday() - weekday) % 7)

    first = date(year, month, 1)
    day = 1 + (weekday - first.weekday()) % 7 + (nth - 1) * 7
    if day > last_day:
        return None
    return date(year, month, day)


def _to_ts(day: date, tod: time) -> int:
    return int(datetime.combine(day, tod, tzinfo=UTC).timestamp())


def _month_starts(start: date):
    for offset in range(SEARCH_MONTHS):
        yield add_months(start.replace(day=1), offset)


# =============================================================================
# NEXT OCCURRENCE
# =============================================================================


def next_occurrence(
    rule: RecurrenceRule | str, from_ts: int, time_of_day_from: int | None = None
) -> int | None:
    """
    Next timestamp after *from_ts* that satisfies *rule*.

    Time of day is taken from *time_of_day_from* when given (the source
    task's due timestamp), otherwise from *from_ts*.

    Returns None when the search window holds no match.
    """
    if isinstance(rule, str):
        rule = parse_rule(rule)

    from_dt = datetime.fromtimestamp(from_ts, UTC)
    tod_source = from_dt if time_of_day_from is None else datetime.fromtimestamp(time_of_day_from, UTC)
    tod = tod_source.time().replace(microsecond=0)
    from_date = from_dt.date()

    if isinstance(rule, (SimpleFrequency, IntervalFrequency)):
        count = rule.count if isinstance(rule, IntervalFrequency) else 1
        candidate = _to_ts(_advance(from_date, rule.unit, count), tod)
        return candidate if candidate > from_ts else None

    # Calendar-set rules never fire again on the completion date itself
    if isinstance(rule, WeekdaySet):
        for offset in range(1, 8):
            day = from_date + timedelta(days=offset)
            if day.weekday() in rule.weekdays:
                return _to_ts(day, tod)
        return None

    if isinstance(rule, MonthdaySet):
        for month_start in _month_starts(from_date):
            last_day = calendar.monthrange(month_start.year, month_start.month)[1]
            for dom in rule.days:
                if dom > last_day:
                    continue
                day = month_start.replace(day=dom)
                if day > from_date:
                    return _to_ts(day, tod)
        return None

    if isinstance(rule, NthWeekday):
        for month_start in _month_starts(from_date):
            day = nth_weekday_of_month(month_start.year, month_start.month, rule.nth, rule.weekday)
            if day is not None and day > from_date:
                return _to_ts(day, tod)
        return None

    raise TypeError(f"Not a recurrence rule: {rule!r}")


def _advance(day: date, unit: Unit, count: int) -> date:
    if unit is Unit.DAY:
        return day + timedelta(days=count)
    if unit is Unit.WEEK:
        return day + timedelta(weeks=count)
    if unit is Unit.MONTH:
        return add_months(day, count)
    return add_months(day, 12 * count)


# =============================================================================
# MATERIALISATION
# =============================================================================


class RespawnStatus(str, Enum):
    NOT_APPLICABLE = "not_applicable"
    SPAWNED = "spawned"
    FAILED = "failed"


@dataclass
class RespawnOutcome:
    status: RespawnStatus
    new_task_id: int | None = None
    next_due_ts: int | None = None
    error: str | None = None

    @property
    def spawned(self) -> bool:
        return self.status is RespawnStatus.SPAWNED


class RespawnScheduler:
    """
    Creates the follow-up task when a recurring task is finished.

    Runs in its own transaction: a failure here never undoes the
    lifecycle change that triggered it.
    """

    def __init__(self, store: TimelineStore, respawn_on_cancel: bool = True):
        self.store = store
        self.respawn_on_cancel = respawn_on_cancel

    def applies_to(self, task: Task) -> bool:
        if not task.recurrence_rule:
            return False
        if task.lifecycle is Lifecycle.COMPLETED:
            return True
        return task.lifecycle is Lifecycle.CANCELLED and self.respawn_on_cancel

    def respawn(self, task: Task, at_ts: int) -> RespawnOutcome:
        if not self.applies_to(task):
            return RespawnOutcome(RespawnStatus.NOT_APPLICABLE)

        try:
            next_due = next_occurrence(task.recurrence_rule, at_ts, task.due_ts)
            if next_due is None:
                raise ValidationError(
                    f"Rule {task.recurrence_rule!r} has no occurrence after {at_ts}"
                )
            with self.store.transaction():
                new_task = self.store.create_task(
                    description=task.description,
                    created_ts=at_ts,
                    project=task.project,
                    tags=list(task.tags),
                    due_ts=next_due,
                    alloc_secs=task.alloc_secs,
                    recurrence_rule=task.recurrence_rule,
                )
                self.store.record_event(
                    new_task.id,
                    EventKind.RESPAWNED,
                    at_ts,
                    {"from_task": task.id, "due_ts": next_due},
                )
        except (LedgerError, sqlite3.Error) as exc:
            logger.warning("Respawn of task %s failed: %s", task.id, exc)
            return RespawnOutcome(RespawnStatus.FAILED, error=str(exc))

        logger.info("Respawned task %s as %s, due %s", task.id, new_task.id, next_due)
        return RespawnOutcome(RespawnStatus.SPAWNED, new_task_id=new_task.id, next_due_ts=next_due)
