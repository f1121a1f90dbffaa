"""
Recurrence rules - parsed once into a tagged variant.

Accepted text (case-insensitive):
    daily | weekly | monthly | yearly
    <N>d | <N>w | <N>m | <N>y          N >= 1
    mon,wed,fri                        weekday names, short or long
    1,15                               days of month, 1-31
    2nd-tue | first-mon | last-fri     nth weekday of month
    every:2d | weekdays:mon,fri | monthdays:1,15 | nth:2:tue   (legacy)

Rules are stored as format_rule() output so they read back identically.
"""

from dataclasses import dataclass
from enum import Enum

from taskledger.errors import ValidationError


class Unit(str, Enum):
    DAY = "d"
    WEEK = "w"
    MONTH = "m"
    YEAR = "y"


WEEKDAY_NAMES = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")
WEEKDAY_LONG_NAMES = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")

_WEEKDAYS = {name: i for i, name in enumerate(WEEKDAY_NAMES)}
_WEEKDAYS.update({name: i for i, name in enumerate(WEEKDAY_LONG_NAMES)})

_ORDINALS = {
    "1st": 1,
    "first": 1,
    "2nd": 2,
    "second": 2,
    "3rd": 3,
    "third": 3,
    "4th": 4,
    "fourth": 4,
    "5th": 5,
    "fifth": 5,
    "last": -1,
}

_ORDINAL_TEXT = {1: "1st", 2: "2nd", 3: "3rd", 4: "4th", 5: "5th", -1: "last"}

_SIMPLE = {"daily": Unit.DAY, "weekly": Unit.WEEK, "monthly": Unit.MONTH, "yearly": Unit.YEAR}
_UNIT_NAMES = {Unit.DAY: "day", Unit.WEEK: "week", Unit.MONTH: "month", Unit.YEAR: "year"}


# =============================================================================
# VARIANTS
# =============================================================================


@dataclass(frozen=True)
class SimpleFrequency:
    """One calendar unit: daily, weekly, monthly, yearly."""

    unit: Unit


@dataclass(frozen=True)
class IntervalFrequency:
    count: int
    unit: Unit


@dataclass(frozen=True)
class WeekdaySet:
    weekdays: tuple[int, ...]  # 0 = Monday


@dataclass(frozen=True)
class MonthdaySet:
    days: tuple[int, ...]


@dataclass(frozen=True)
class NthWeekday:
    nth: int  # 1..5, or -1 for the last one in the month
    weekday: int


RecurrenceRule = SimpleFrequency | IntervalFrequency | WeekdaySet | MonthdaySet | NthWeekday


# =============================================================================
# PARSING
# =============================================================================


def parse_rule(text: str) -> RecurrenceRule:
    """
    Parse rule text.

    Raises:
        ValidationError: if the text is not a recognised rule
    """
    if text is None:
        raise ValidationError("Empty recurrence rule")
    rule = text.strip().lower()
    if not rule:
        raise ValidationError("Empty recurrence rule")

    if rule in _SIMPLE:
        return SimpleFrequency(_SIMPLE[rule])

    for prefix, parser in _LEGACY_PREFIXES:
        if rule.startswith(prefix):
            return parser(rule[len(prefix) :])

    if "-" in rule:
        return _parse_nth_weekday(rule)
    if rule[-1:] in {u.value for u in Unit} and rule[:-1].isdigit():
        return _parse_interval(rule)
    if rule.split(",")[0].strip() in _WEEKDAYS:
        return WeekdaySet(_parse_weekdays(rule))
    if all(part.strip().isdigit() for part in rule.split(",") if part.strip()):
        return MonthdaySet(_parse_monthdays(rule))

    raise ValidationError(f"Unknown recurrence rule: {text!r}")


def _parse_interval(text: str) -> IntervalFrequency:
    number, unit = text[:-1], text[-1:]
    if not number.isdigit():
        raise ValidationError(f"Invalid interval: {text!r}")
    count = int(number)
    if count < 1:
        raise ValidationError(f"Interval must be at least 1: {text!r}")
    try:
        return IntervalFrequency(count, Unit(unit))
    except ValueError:
        raise ValidationError(f"Invalid interval unit {unit!r} (expected d, w, m or y)") from None


def _parse_weekday(text: str) -> int:
    try:
        return _WEEKDAYS[text.strip()]
    except KeyError:
        raise ValidationError(f"Invalid weekday: {text!r}") from None


def _parse_weekdays(text: str) -> tuple[int, ...]:
    days = {_parse_weekday(part) for part in text.split(",") if part.strip()}
    if not days:
        raise ValidationError("No weekdays given")
    return tuple(sorted(days))


def _parse_monthdays(text: str) -> tuple[int, ...]:
    days = set()
    for part in text.split(","):
        part = part.strip()
        if not part:
            continue
        if not part.isdigit():
            raise ValidationError(f"Invalid day of month: {part!r}")
        day = int(part)
        if not 1 <= day <= 31:
            raise ValidationError(f"Day of month must be between 1 and 31: {day}")
        days.add(day)
    if not days:
        raise ValidationError("No days of month given")
    return tuple(sorted(days))


def _parse_nth_weekday(text: str) -> NthWeekday:
    parts = text.split("-")
    if len(parts) != 2:
        raise ValidationError(f"Expected '<nth>-<weekday>' (e.g. 2nd-tue), got {text!r}")
    ordinal, weekday = parts
    if ordinal not in _ORDINALS:
        raise ValidationError(f"Invalid ordinal {ordinal!r} (expected 1st..5th or last)")
    return NthWeekday(_ORDINALS[ordinal], _parse_weekday(weekday))


def _parse_legacy_nth(text: str) -> NthWeekday:
    parts = text.split(":")
    if len(parts) != 2 or not parts[0].isdigit():
        raise ValidationError(f"Expected 'nth:<N>:<weekday>', got {text!r}")
    nth = int(parts[0])
    if not 1 <= nth <= 5:
        raise ValidationError(f"Nth value must be between 1 and 5: {nth}")
    return NthWeekday(nth, _parse_weekday(parts[1]))


_LEGACY_PREFIXES = (
    ("every:", _parse_interval),
    ("weekdays:", lambda text: WeekdaySet(_parse_weekdays(text))),
    ("monthdays:", lambda text: MonthdaySet(_parse_monthdays(text))),
    ("nth:", _parse_legacy_nth),
)


# =============================================================================
# RENDERING
# =============================================================================


def format_rule(rule: RecurrenceRule) -> str:
    """Canonical text; parse_rule(format_rule(r)) == r."""
    if isinstance(rule, SimpleFrequency):
        return {v: k for k, v in _SIMPLE.items()}[rule.unit]
    if isinstance(rule, IntervalFrequency):
        return f"{rule.count}{rule.unit.value}"
    if isinstance(rule, WeekdaySet):
        return ",".join(WEEKDAY_NAMES[d] for d in rule.weekdays)
    if isinstance(rule, MonthdaySet):
        return ",".join(str(d) for d in rule.days)
    if isinstance(rule, NthWeekday):
        return f"{_ORDINAL_TEXT[rule.nth]}-{WEEKDAY_NAMES[rule.weekday]}"
    raise TypeError(f"Not a recurrence rule: {rule!r}")


def describe_rule(rule: RecurrenceRule) -> str:
    """One-line English description for display."""
    if isinstance(rule, SimpleFrequency):
        return f"Every {_UNIT_NAMES[rule.unit]}"
    if isinstance(rule, IntervalFrequency):
        unit = _UNIT_NAMES[rule.unit]
        return f"Every {rule.count} {unit}s" if rule.count > 1 else f"Every {unit}"
    if isinstance(rule, WeekdaySet):
        names = [WEEKDAY_LONG_NAMES[d].capitalize() for d in rule.weekdays]
        return "Every " + ", ".join(names)
    if isinstance(rule, MonthdaySet):
        return "Day " + " or ".join(str(d) for d in rule.days) + " of each month"
    if isinstance(rule, NthWeekday):
        return (
            f"The {_ORDINAL_TEXT[rule.nth]} {WEEKDAY_LONG_NAMES[rule.weekday].capitalize()}"
            " of each month"
        )
    raise TypeError(f"Not a recurrence rule: {rule!r}")


def normalize_rule(text: str) -> str:
    """Parse and re-render, raising ValidationError on bad input."""
    return format_rule(parse_rule(text))
