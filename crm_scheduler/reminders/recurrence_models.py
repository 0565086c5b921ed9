"""
Recurring task patterns and the occurrence calculator
"""
import calendar
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple

from crm_scheduler.utils.timezone import parse_time_of_day


class RecurrenceType(str, Enum):
    """Types of recurrence patterns"""
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class Weekday(str, Enum):
    """Weekday tokens as stored by the CRM"""
    SUNDAY = "sun"
    MONDAY = "mon"
    TUESDAY = "tue"
    WEDNESDAY = "wed"
    THURSDAY = "thu"
    FRIDAY = "fri"
    SATURDAY = "sat"

    @property
    def index(self) -> int:
        """Python weekday number (Monday=0)."""
        return _WEEKDAY_INDEX[self]


_WEEKDAY_INDEX = {
    Weekday.MONDAY: 0,
    Weekday.TUESDAY: 1,
    Weekday.WEDNESDAY: 2,
    Weekday.THURSDAY: 3,
    Weekday.FRIDAY: 4,
    Weekday.SATURDAY: 5,
    Weekday.SUNDAY: 6,
}

LAST_DAY_OF_MONTH = 0


def days_in_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def resolve_day_of_month(day_of_month: int, year: int, month: int) -> int:
    """Map a configured day (0 = last day) onto a real day of the given month, clamping to its length."""
    last = days_in_month(year, month)
    if day_of_month == LAST_DAY_OF_MONTH:
        return last
    return min(day_of_month, last)


def _next_month(year: int, month: int) -> Tuple[int, int]:
    if month == 12:
        return year + 1, 1
    return year, month + 1


@dataclass(frozen=True)
class RecurrenceRule:
    """Start/due halves of a recurring task template, in local wall-clock terms"""
    recurrence_type: RecurrenceType
    start_time: time
    due_time: time
    start_days: FrozenSet[Weekday] = field(default_factory=frozenset)
    due_days: FrozenSet[Weekday] = field(default_factory=frozenset)
    start_day_of_month: Optional[int] = None
    due_day_of_month: Optional[int] = None
    is_active: bool = True
    next_occurrence_utc: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RecurrenceRule":
        def _time(value):
            return value if isinstance(value, time) else parse_time_of_day(value)

        return cls(
            recurrence_type=RecurrenceType(data["recurrence_type"]),
            start_time=_time(data["start_time"]),
            due_time=_time(data["due_time"]),
            start_days=frozenset(Weekday(d) for d in (data.get("start_days") or [])),
            due_days=frozenset(Weekday(d) for d in (data.get("due_days") or [])),
            start_day_of_month=data.get("start_day_of_month"),
            due_day_of_month=data.get("due_day_of_month"),
            is_active=data.get("is_active", True),
            next_occurrence_utc=data.get("next_occurrence_utc"),
        )


class RecurrenceCalculator:
    """Calculates occurrences for recurring task templates.

    Every input and output is a naive local wall-clock datetime; conversion to
    and from UTC belongs to the caller (see crm_scheduler.utils.timezone).
    """

    @staticmethod
    def next_occurrence(rule: RecurrenceRule, reference: datetime) -> datetime:
        """First start instant strictly after ``reference``."""
        return RecurrenceCalculator._resolve(
            rule.recurrence_type,
            rule.start_time,
            rule.start_days,
            rule.start_day_of_month,
            reference,
            inclusive=False,
        )

    @staticmethod
    def due_for_occurrence(rule: RecurrenceRule, occurrence_start: datetime) -> datetime:
        """Due instant paired with the occurrence starting at ``occurrence_start``.

        Evaluated from the start of the occurrence's calendar day with the same
        day allowed, so a due time earlier than the start time stays on that day.
        """
        day_start = datetime.combine(occurrence_start.date(), time.min)
        return RecurrenceCalculator._resolve(
            rule.recurrence_type,
            rule.due_time,
            rule.due_days,
            rule.due_day_of_month,
            day_start,
            inclusive=True,
        )

    @staticmethod
    def occurrence_window(rule: RecurrenceRule, occurrence_start: datetime) -> Tuple[datetime, datetime]:
        return occurrence_start, RecurrenceCalculator.due_for_occurrence(rule, occurrence_start)

    @staticmethod
    def upcoming_occurrences(rule: RecurrenceRule, reference: datetime, count: int) -> List[datetime]:
        """Next ``count`` start instants after ``reference``, each rolled from the previous one."""
        occurrences = []
        current = reference
        for _ in range(count):
            current = RecurrenceCalculator.next_occurrence(rule, current)
            occurrences.append(current)
        return occurrences

    @staticmethod
    def _resolve(
        recurrence_type: RecurrenceType,
        at: time,
        weekdays: Iterable[Weekday],
        day_of_month: Optional[int],
        reference: datetime,
        inclusive: bool,
    ) -> datetime:
        def passed(candidate: datetime) -> bool:
            return candidate < reference if inclusive else candidate <= reference

        if recurrence_type == RecurrenceType.DAILY:
            return RecurrenceCalculator._daily(at, reference, passed)
        if recurrence_type == RecurrenceType.WEEKLY:
            return RecurrenceCalculator._weekly(at, weekdays, reference, passed)
        return RecurrenceCalculator._monthly(at, day_of_month, reference, passed)

    @staticmethod
    def _daily(at: time, reference: datetime, passed) -> datetime:
        candidate = datetime.combine(reference.date(), at)
        if passed(candidate):
            candidate += timedelta(days=1)
        return candidate

    @staticmethod
    def _weekly(at: time, weekdays: Iterable[Weekday], reference: datetime, passed) -> datetime:
        today_slot = datetime.combine(reference.date(), at)
        best: Optional[int] = None
        for weekday in weekdays:
            delta = (weekday.index - reference.weekday()) % 7
            if delta == 0 and passed(today_slot):
                # this weekday, next week
                delta = 7
            if best is None or delta < best:
                best = delta
        if best is None:
            raise ValueError("Weekly recurrence needs at least one weekday")
        return datetime.combine(reference.date() + timedelta(days=best), at)

    @staticmethod
    def _monthly(at: time, day_of_month: Optional[int], reference: datetime, passed) -> datetime:
        if day_of_month is None:
            raise ValueError("Monthly recurrence needs a day of month")
        year, month = reference.year, reference.month
        candidate = datetime.combine(date(year, month, resolve_day_of_month(day_of_month, year, month)), at)
        if passed(candidate):
            year, month = _next_month(year, month)
            candidate = datetime.combine(date(year, month, resolve_day_of_month(day_of_month, year, month)), at)
        return candidate
