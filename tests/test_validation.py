from datetime import datetime, timezone

import pytest

from crm_scheduler.reminders.exceptions import ValidationError
from crm_scheduler.reminders.validation import validate_recurrence, validate_reminder, validate_task_dates


def template(**overrides):
    data = {
        "title": "Quarterly check-in",
        "recurrence_type": "weekly",
        "start_time": "09:00",
        "due_time": "17:00",
        "start_days": ["mon"],
        "due_days": ["fri"],
        "priority": "medium",
    }
    data.update(overrides)
    return data


def reminder(**overrides):
    data = {"anchor_kind": "due_date", "offset_timing": "before", "offset_value": 30, "offset_unit": "minutes"}
    data.update(overrides)
    return data


def test_valid_weekly_template_passes():
    validate_recurrence(template())


def test_valid_monthly_template_passes():
    validate_recurrence(template(recurrence_type="monthly", start_day_of_month=0, due_day_of_month=31))


def test_empty_weekday_set_rejected():
    with pytest.raises(ValidationError) as exc:
        validate_recurrence(template(start_days=[]))
    assert any("start_days" in e for e in exc.value.errors)


def test_unknown_weekday_token_rejected():
    with pytest.raises(ValidationError):
        validate_recurrence(template(due_days=["monday"]))


def test_duplicate_weekdays_rejected():
    with pytest.raises(ValidationError):
        validate_recurrence(template(start_days=["mon", "mon"]))


@pytest.mark.parametrize("day", [-1, 32, None])
def test_day_of_month_out_of_range_rejected(day):
    with pytest.raises(ValidationError):
        validate_recurrence(template(recurrence_type="monthly", start_day_of_month=day, due_day_of_month=5))


@pytest.mark.parametrize("value", ["", "9am", "24:00"])
def test_bad_time_rejected(value):
    with pytest.raises(ValidationError):
        validate_recurrence(template(start_time=value))


def test_every_problem_is_reported_at_once():
    with pytest.raises(ValidationError) as exc:
        validate_recurrence(template(title=" ", start_days=[], priority="critical"))
    assert len(exc.value.errors) == 3


def test_due_before_start_is_not_cross_checked():
    validate_recurrence(template(recurrence_type="daily", start_time="18:00", due_time="08:00"))


def test_valid_reminder_passes():
    validate_reminder(reminder())


def test_custom_reminder_needs_datetime():
    with pytest.raises(ValidationError):
        validate_reminder(reminder(anchor_kind="custom"))
    validate_reminder(reminder(anchor_kind="custom", custom_datetime=datetime(2024, 1, 1, tzinfo=timezone.utc)))


@pytest.mark.parametrize("overrides", [
    {"offset_value": -1},
    {"offset_value": True},
    {"offset_unit": "weeks"},
    {"offset_timing": "during"},
    {"anchor_kind": "created_at"},
])
def test_bad_reminder_fields_rejected(overrides):
    with pytest.raises(ValidationError):
        validate_reminder(reminder(**overrides))


def test_due_date_before_start_date_rejected():
    start = datetime(2024, 1, 10, tzinfo=timezone.utc)
    with pytest.raises(ValidationError):
        validate_task_dates(start, datetime(2024, 1, 9, tzinfo=timezone.utc))
    validate_task_dates(start, None)
