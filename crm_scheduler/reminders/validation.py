"""
Write-time validation for recurring task templates and task reminders.

Every check appends to an error list so the caller sees all problems at once;
a non-empty list is raised as ValidationError.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from crm_scheduler.utils.timezone import parse_time_of_day
from .exceptions import ValidationError
from .recurrence_models import RecurrenceType, Weekday
from .reminder_models import AnchorKind, OffsetTiming, OffsetUnit

VALID_PRIORITIES = ("low", "medium", "high", "urgent")
VALID_WEEKDAYS = [d.value for d in Weekday]


def _check_time(errors: List[str], name: str, value: Any) -> None:
    if not value:
        errors.append(f"{name} is required")
        return
    try:
        parse_time_of_day(str(value))
    except ValueError:
        errors.append(f"{name} must be a wall-clock time in HH:MM format, got {value!r}")


def _check_days(errors: List[str], name: str, days: Optional[List[str]]) -> None:
    if not days:
        errors.append(f"{name} must contain at least one day for weekly recurrence")
        return
    invalid = [d for d in days if d not in VALID_WEEKDAYS]
    if invalid:
        errors.append(f"Invalid {name} values {invalid}; valid values: {VALID_WEEKDAYS}")
    if len(set(days)) != len(days):
        errors.append(f"{name} contains duplicate days")


def _check_day_of_month(errors: List[str], name: str, value: Optional[int]) -> None:
    if value is None:
        errors.append(f"{name} is required for monthly recurrence")
    elif isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= 31:
        errors.append(f"{name} must be between 0 (last day) and 31, got {value!r}")


def validate_recurrence(data: Dict[str, Any]) -> None:
    """Validate a full recurring task template (after any partial update is merged)."""
    errors: List[str] = []

    if not (data.get("title") or "").strip():
        errors.append("title is required")

    recurrence_type = data.get("recurrence_type")
    valid_types = [t.value for t in RecurrenceType]
    if recurrence_type not in valid_types:
        errors.append(f"Invalid recurrence_type {recurrence_type!r}; valid values: {valid_types}")

    _check_time(errors, "start_time", data.get("start_time"))
    _check_time(errors, "due_time", data.get("due_time"))

    if recurrence_type == RecurrenceType.WEEKLY.value:
        _check_days(errors, "start_days", data.get("start_days"))
        _check_days(errors, "due_days", data.get("due_days"))
    elif recurrence_type == RecurrenceType.MONTHLY.value:
        _check_day_of_month(errors, "start_day_of_month", data.get("start_day_of_month"))
        _check_day_of_month(errors, "due_day_of_month", data.get("due_day_of_month"))

    priority = data.get("priority")
    if priority and priority.lower() not in VALID_PRIORITIES:
        errors.append(f"Invalid priority {priority!r}; valid values: {list(VALID_PRIORITIES)}")

    if errors:
        raise ValidationError(errors)


def validate_reminder(data: Dict[str, Any]) -> None:
    errors: List[str] = []

    anchor_kind = data.get("anchor_kind")
    valid_anchors = [a.value for a in AnchorKind]
    if anchor_kind not in valid_anchors:
        errors.append(f"Invalid anchor_kind {anchor_kind!r}; valid values: {valid_anchors}")
    elif anchor_kind == AnchorKind.CUSTOM.value and not isinstance(data.get("custom_datetime"), datetime):
        errors.append("custom_datetime is required for a custom reminder")

    if data.get("offset_timing") not in [t.value for t in OffsetTiming]:
        errors.append(f"Invalid offset_timing {data.get('offset_timing')!r}; valid values: before, after")
    if data.get("offset_unit") not in [u.value for u in OffsetUnit]:
        errors.append(f"Invalid offset_unit {data.get('offset_unit')!r}; valid values: minutes, hours, days")

    value = data.get("offset_value")
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        errors.append(f"offset_value must be a non-negative integer, got {value!r}")

    if errors:
        raise ValidationError(errors)


def validate_task_dates(start_date: Optional[datetime], due_date: Optional[datetime]) -> None:
    if start_date and due_date and due_date < start_date:
        raise ValidationError("Due date cannot be before start date")
