from datetime import datetime, time, timedelta

import pytest

from crm_scheduler.reminders.recurrence_models import (
    RecurrenceCalculator,
    RecurrenceRule,
    RecurrenceType,
    Weekday,
    resolve_day_of_month,
)


def daily(start="09:00", due="18:00"):
    return RecurrenceRule.from_dict({"recurrence_type": "daily", "start_time": start, "due_time": due})


def weekly(start_days, due_days=None, start="09:00", due="17:00"):
    return RecurrenceRule.from_dict({
        "recurrence_type": "weekly",
        "start_time": start,
        "due_time": due,
        "start_days": start_days,
        "due_days": due_days or start_days,
    })


def monthly(start_dom, due_dom=None, start="09:00", due="17:00"):
    return RecurrenceRule.from_dict({
        "recurrence_type": "monthly",
        "start_time": start,
        "due_time": due,
        "start_day_of_month": start_dom,
        "due_day_of_month": start_dom if due_dom is None else due_dom,
    })


# 2024-01-10 is a Wednesday

class TestDaily:
    def test_before_start_time_returns_today(self):
        assert RecurrenceCalculator.next_occurrence(daily(), datetime(2024, 1, 10, 8, 0)) == datetime(2024, 1, 10, 9, 0)

    def test_after_start_time_advances_one_day(self):
        assert RecurrenceCalculator.next_occurrence(daily(), datetime(2024, 1, 10, 10, 0)) == datetime(2024, 1, 11, 9, 0)

    def test_exactly_at_start_time_advances_one_day(self):
        assert RecurrenceCalculator.next_occurrence(daily(), datetime(2024, 1, 10, 9, 0)) == datetime(2024, 1, 11, 9, 0)

    def test_rolls_over_month_and_year(self):
        assert RecurrenceCalculator.next_occurrence(daily(), datetime(2024, 12, 31, 9, 30)) == datetime(2025, 1, 1, 9, 0)


class TestWeekly:
    def test_later_weekday_same_week(self):
        rule = weekly(["mon", "thu"])
        assert RecurrenceCalculator.next_occurrence(rule, datetime(2024, 1, 10, 8, 0)) == datetime(2024, 1, 11, 9, 0)

    def test_own_slot_passed_moves_to_next_week(self):
        rule = weekly(["mon", "thu"])
        assert RecurrenceCalculator.next_occurrence(rule, datetime(2024, 1, 11, 10, 0)) == datetime(2024, 1, 15, 9, 0)

    def test_single_day_already_passed_is_a_week_out(self):
        rule = weekly(["wed"])
        assert RecurrenceCalculator.next_occurrence(rule, datetime(2024, 1, 10, 9, 0)) == datetime(2024, 1, 17, 9, 0)

    def test_same_day_before_slot(self):
        rule = weekly(["wed"])
        assert RecurrenceCalculator.next_occurrence(rule, datetime(2024, 1, 10, 7, 0)) == datetime(2024, 1, 10, 9, 0)

    def test_sunday_token(self):
        rule = weekly(["sun"])
        assert RecurrenceCalculator.next_occurrence(rule, datetime(2024, 1, 10, 7, 0)) == datetime(2024, 1, 14, 9, 0)

    def test_empty_weekday_set_raises(self):
        rule = RecurrenceRule(RecurrenceType.WEEKLY, time(9), time(17))
        with pytest.raises(ValueError):
            RecurrenceCalculator.next_occurrence(rule, datetime(2024, 1, 10))


class TestMonthly:
    def test_day_31_clamps_in_april(self):
        assert RecurrenceCalculator.next_occurrence(monthly(31), datetime(2024, 4, 1)) == datetime(2024, 4, 30, 9, 0)

    def test_day_31_in_may(self):
        assert RecurrenceCalculator.next_occurrence(monthly(31), datetime(2024, 5, 1)) == datetime(2024, 5, 31, 9, 0)

    def test_passed_day_moves_to_next_month_and_reclamps(self):
        # March 31 has passed, April only has 30 days
        assert RecurrenceCalculator.next_occurrence(monthly(31), datetime(2024, 3, 31, 10, 0)) == datetime(2024, 4, 30, 9, 0)

    def test_last_day_sentinel_in_leap_february(self):
        assert RecurrenceCalculator.next_occurrence(monthly(0), datetime(2024, 2, 1)) == datetime(2024, 2, 29, 9, 0)

    def test_last_day_sentinel_in_common_february(self):
        assert RecurrenceCalculator.next_occurrence(monthly(0), datetime(2023, 2, 1)) == datetime(2023, 2, 28, 9, 0)

    def test_last_day_sentinel_re_resolved_for_next_month(self):
        # Jan 31 09:00 passed; February's last day, not the 31st clamped from January
        assert RecurrenceCalculator.next_occurrence(monthly(0), datetime(2024, 1, 31, 12, 0)) == datetime(2024, 2, 29, 9, 0)

    def test_december_rolls_into_january(self):
        assert RecurrenceCalculator.next_occurrence(monthly(15), datetime(2024, 12, 20)) == datetime(2025, 1, 15, 9, 0)

    def test_sentinel_across_a_year_of_occurrences(self):
        starts = RecurrenceCalculator.upcoming_occurrences(monthly(0), datetime(2024, 1, 1), 12)
        assert [s.day for s in starts] == [31, 29, 31, 30, 31, 30, 31, 31, 30, 31, 30, 31]

    def test_missing_day_of_month_raises(self):
        rule = RecurrenceRule(RecurrenceType.MONTHLY, time(9), time(17))
        with pytest.raises(ValueError):
            RecurrenceCalculator.next_occurrence(rule, datetime(2024, 1, 10))


@pytest.mark.parametrize("rule", [
    daily(),
    daily(start="00:00"),
    weekly(["mon", "thu"]),
    weekly(["sat"]),
    monthly(1),
    monthly(0),
    monthly(31),
])
def test_result_is_strictly_after_reference(rule):
    reference = datetime(2024, 1, 1, 0, 0)
    for _ in range(400):
        result = RecurrenceCalculator.next_occurrence(rule, reference)
        assert result > reference
        reference += timedelta(hours=23, minutes=17)


def test_next_occurrence_is_pure():
    rule = weekly(["mon", "thu"])
    reference = datetime(2024, 1, 10, 8, 0)
    assert RecurrenceCalculator.next_occurrence(rule, reference) == RecurrenceCalculator.next_occurrence(rule, reference)
    assert reference == datetime(2024, 1, 10, 8, 0)


class TestDueForOccurrence:
    def test_daily_due_same_day(self):
        rule = daily(start="09:00", due="18:00")
        assert RecurrenceCalculator.due_for_occurrence(rule, datetime(2024, 1, 10, 9, 0)) == datetime(2024, 1, 10, 18, 0)

    def test_daily_due_before_start_stays_on_that_day(self):
        rule = daily(start="09:00", due="08:00")
        assert RecurrenceCalculator.due_for_occurrence(rule, datetime(2024, 1, 10, 9, 0)) == datetime(2024, 1, 10, 8, 0)

    def test_weekly_due_later_in_the_week(self):
        rule = weekly(["mon"], due_days=["fri"])
        assert RecurrenceCalculator.due_for_occurrence(rule, datetime(2024, 1, 8, 9, 0)) == datetime(2024, 1, 12, 17, 0)

    def test_weekly_due_on_start_day(self):
        rule = weekly(["mon"], due_days=["mon"])
        assert RecurrenceCalculator.due_for_occurrence(rule, datetime(2024, 1, 8, 9, 0)) == datetime(2024, 1, 8, 17, 0)

    def test_monthly_due_in_following_month(self):
        rule = monthly(25, due_dom=5)
        assert RecurrenceCalculator.due_for_occurrence(rule, datetime(2024, 1, 25, 9, 0)) == datetime(2024, 2, 5, 17, 0)

    def test_monthly_due_later_same_month(self):
        rule = monthly(1, due_dom=0)
        assert RecurrenceCalculator.due_for_occurrence(rule, datetime(2024, 2, 1, 9, 0)) == datetime(2024, 2, 29, 17, 0)

    def test_occurrence_window(self):
        start, due = RecurrenceCalculator.occurrence_window(daily(), datetime(2024, 1, 10, 9, 0))
        assert (start, due) == (datetime(2024, 1, 10, 9, 0), datetime(2024, 1, 10, 18, 0))


def test_upcoming_occurrences_chain_from_previous():
    starts = RecurrenceCalculator.upcoming_occurrences(weekly(["mon", "thu"]), datetime(2024, 1, 10, 8, 0), 4)
    assert starts == [
        datetime(2024, 1, 11, 9, 0),
        datetime(2024, 1, 15, 9, 0),
        datetime(2024, 1, 18, 9, 0),
        datetime(2024, 1, 22, 9, 0),
    ]


def test_resolve_day_of_month():
    assert resolve_day_of_month(0, 2024, 4) == 30
    assert resolve_day_of_month(31, 2024, 6) == 30
    assert resolve_day_of_month(12, 2024, 6) == 12


def test_weekday_index_matches_python_weekday():
    assert Weekday.MONDAY.index == datetime(2024, 1, 8).weekday()
    assert Weekday.SUNDAY.index == datetime(2024, 1, 14).weekday()
