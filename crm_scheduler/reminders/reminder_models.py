"""
Reminder offset rules and the trigger calculator
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from .exceptions import ValidationError


class AnchorKind(str, Enum):
    START_DATE = "start_date"
    DUE_DATE = "due_date"
    CUSTOM = "custom"


class OffsetTiming(str, Enum):
    BEFORE = "before"
    AFTER = "after"


class OffsetUnit(str, Enum):
    MINUTES = "minutes"
    HOURS = "hours"
    DAYS = "days"

    @property
    def length(self) -> timedelta:
        return _UNIT_LENGTHS[self]


_UNIT_LENGTHS = {
    OffsetUnit.MINUTES: timedelta(minutes=1),
    OffsetUnit.HOURS: timedelta(hours=1),
    OffsetUnit.DAYS: timedelta(days=1),
}


@dataclass(frozen=True)
class ReminderRule:
    anchor_kind: AnchorKind
    offset_timing: OffsetTiming
    offset_value: int
    offset_unit: OffsetUnit
    custom_datetime_utc: Optional[datetime] = None


class ReminderCalculator:
    """Computes when a reminder fires relative to its anchor"""

    @staticmethod
    def trigger_time(anchor: datetime, timing: OffsetTiming, value: int, unit: OffsetUnit) -> datetime:
        duration = unit.length * value
        if timing == OffsetTiming.BEFORE:
            return anchor - duration
        return anchor + duration

    @staticmethod
    def resolve_anchor(
        anchor_kind: AnchorKind,
        task_start: Optional[datetime],
        task_due: Optional[datetime],
        custom_datetime: Optional[datetime] = None,
    ) -> datetime:
        if anchor_kind == AnchorKind.START_DATE:
            anchor, label = task_start, "Task start date"
        elif anchor_kind == AnchorKind.DUE_DATE:
            anchor, label = task_due, "Task due date"
        else:
            anchor, label = custom_datetime, "custom_datetime"
        if anchor is None:
            raise ValidationError(f"{label} is required for a '{anchor_kind.value}' reminder")
        return anchor

    @staticmethod
    def trigger_for_rule(
        rule: ReminderRule,
        task_start: Optional[datetime],
        task_due: Optional[datetime],
    ) -> datetime:
        anchor = ReminderCalculator.resolve_anchor(
            rule.anchor_kind, task_start, task_due, rule.custom_datetime_utc
        )
        return ReminderCalculator.trigger_time(anchor, rule.offset_timing, rule.offset_value, rule.offset_unit)
