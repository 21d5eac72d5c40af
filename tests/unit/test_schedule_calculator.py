"""
Unit tests for RecurrenceCalculator.

Covers next-occurrence arithmetic for every schedule shape, first
occurrence on or after a start, timezone/DST handling and validation.
"""

import pytest
from datetime import date, datetime, time

import pytz

from recurflow.models.recurrence import (
    CustomSchedule,
    DailySchedule,
    DaysAfterCompletionSchedule,
    FiringBehavior,
    MonthlyMode,
    MonthlySchedule,
    WeeklySchedule,
    YearlySchedule,
)
from recurflow.scheduling.calculator import RecurrenceCalculator
from recurflow.scheduling.exceptions import InvalidScheduleError
from recurflow.utils.datetime_utils import localize, to_local_date


def utc(*args) -> datetime:
    return pytz.UTC.localize(datetime(*args))


def next_of(schedule, reference, **kwargs):
    kwargs.setdefault("due_time", "09:00")
    return RecurrenceCalculator.next_occurrence(schedule, reference, **kwargs)


# 2026-03-02 is a Monday


# ============================================================
# DAILY
# ============================================================

def test_daily_next_day_at_due_time():
    assert next_of(DailySchedule(), utc(2026, 3, 2, 9, 0)) == utc(2026, 3, 3, 9, 0)


def test_daily_interval():
    assert next_of(DailySchedule(interval=3), utc(2026, 3, 2, 9, 0)) == utc(2026, 3, 5, 9, 0)


def test_daily_is_strictly_after_reference_even_before_due_time():
    result = next_of(DailySchedule(), utc(2026, 3, 2, 6, 0))
    assert result == utc(2026, 3, 3, 9, 0)
    assert result > utc(2026, 3, 2, 6, 0)


def test_daily_skip_weekends_moves_to_monday():
    friday = utc(2026, 3, 6, 9, 0)
    assert next_of(DailySchedule(skip_weekends=True), friday) == utc(2026, 3, 9, 9, 0)


def test_definition_level_skip_weekends():
    friday = utc(2026, 3, 6, 9, 0)
    assert next_of(DailySchedule(), friday, skip_weekends=True) == utc(2026, 3, 9, 9, 0)


# ============================================================
# WEEKLY
# ============================================================

def test_weekly_next_day_in_same_window():
    schedule = WeeklySchedule(weekdays=["monday", "wednesday"])
    assert next_of(schedule, utc(2026, 3, 2, 9, 0)) == utc(2026, 3, 4, 9, 0)


def test_weekly_wraps_to_next_window():
    schedule = WeeklySchedule(weekdays=["monday", "wednesday"])
    assert next_of(schedule, utc(2026, 3, 4, 9, 0)) == utc(2026, 3, 9, 9, 0)


def test_weekly_interval_skips_whole_weeks():
    schedule = WeeklySchedule(interval=2, weekdays=[0])
    assert next_of(schedule, utc(2026, 3, 2, 9, 0)) == utc(2026, 3, 16, 9, 0)


def test_weekly_weekday_names_are_normalized():
    schedule = WeeklySchedule(weekdays=["wed", "Monday", 2])
    assert schedule.weekdays == [0, 2]


# ============================================================
# MONTHLY
# ============================================================

def test_monthly_day_31_clamps_to_february_end():
    schedule = MonthlySchedule(day_of_month=31)
    assert next_of(schedule, utc(2026, 1, 31, 9, 0)) == utc(2026, 2, 28, 9, 0)


def test_monthly_clamp_does_not_stick():
    schedule = MonthlySchedule(day_of_month=31)
    assert next_of(schedule, utc(2026, 2, 28, 9, 0)) == utc(2026, 3, 31, 9, 0)


def test_monthly_interval():
    schedule = MonthlySchedule(interval=3, day_of_month=15)
    assert next_of(schedule, utc(2026, 11, 15, 9, 0)) == utc(2027, 2, 15, 9, 0)


def test_monthly_first_and_last_day():
    first = MonthlySchedule(mode=MonthlyMode.FIRST_DAY)
    last = MonthlySchedule(mode=MonthlyMode.LAST_DAY)
    assert next_of(first, utc(2026, 3, 2, 9, 0)) == utc(2026, 4, 1, 9, 0)
    assert next_of(last, utc(2026, 2, 28, 9, 0)) == utc(2026, 3, 31, 9, 0)


def test_monthly_second_tuesday():
    schedule = MonthlySchedule(mode=MonthlyMode.ORDINAL_WEEKDAY, week_of_month=2, weekday="tuesday")
    assert next_of(schedule, utc(2026, 3, 2, 9, 0)) == utc(2026, 4, 14, 9, 0)


def test_monthly_last_friday():
    schedule = MonthlySchedule(mode=MonthlyMode.ORDINAL_WEEKDAY, week_of_month=-1, weekday="fri")
    assert next_of(schedule, utc(2026, 3, 2, 9, 0)) == utc(2026, 4, 24, 9, 0)


def test_monthly_missing_fifth_weekday_falls_back_to_last():
    schedule = MonthlySchedule(mode=MonthlyMode.ORDINAL_WEEKDAY, week_of_month=5, weekday=0)
    assert next_of(schedule, utc(2026, 3, 2, 9, 0)) == utc(2026, 4, 27, 9, 0)


# ============================================================
# YEARLY
# ============================================================

def test_yearly_leap_day_clamps_in_common_year():
    schedule = YearlySchedule(month=2, day=29)
    assert next_of(schedule, utc(2024, 2, 29, 9, 0)) == utc(2025, 2, 28, 9, 0)


def test_yearly_leap_day_restored_in_leap_year():
    schedule = YearlySchedule(month=2, day=29)
    assert next_of(schedule, utc(2027, 2, 28, 9, 0)) == utc(2028, 2, 29, 9, 0)


def test_yearly_interval():
    schedule = YearlySchedule(interval=2, month=7, day=4)
    assert next_of(schedule, utc(2026, 7, 4, 9, 0)) == utc(2028, 7, 4, 9, 0)


# ============================================================
# DAYS AFTER COMPLETION / CUSTOM
# ============================================================

def test_days_after_completion_counts_from_completion_instant():
    completed = utc(2026, 3, 5, 14, 30)
    assert next_of(DaysAfterCompletionSchedule(days=3), completed) == utc(2026, 3, 8, 14, 30)


def test_custom_dates_next_listed_date():
    schedule = CustomSchedule(dates=[date(2026, 3, 5), date(2026, 3, 10)])
    assert next_of(schedule, utc(2026, 3, 2, 9, 0)) == utc(2026, 3, 5, 9, 0)
    assert next_of(schedule, utc(2026, 3, 5, 9, 0)) == utc(2026, 3, 10, 9, 0)


def test_custom_dates_exhausted_returns_none():
    schedule = CustomSchedule(dates=[date(2026, 3, 5), date(2026, 3, 10)])
    assert next_of(schedule, utc(2026, 3, 10, 9, 0)) is None


def test_custom_rule():
    schedule = CustomSchedule(rule="FREQ=WEEKLY;BYDAY=MO,TH", rule_start=date(2026, 3, 2))
    assert next_of(schedule, utc(2026, 3, 2, 9, 0)) == utc(2026, 3, 5, 9, 0)
    assert next_of(schedule, utc(2026, 3, 5, 9, 0)) == utc(2026, 3, 9, 9, 0)


def test_custom_rule_with_count_exhausts():
    schedule = CustomSchedule(rule="FREQ=DAILY;COUNT=2", rule_start=date(2026, 3, 2))
    assert next_of(schedule, utc(2026, 3, 2, 9, 0)) == utc(2026, 3, 3, 9, 0)
    assert next_of(schedule, utc(2026, 3, 3, 9, 0)) is None


def test_custom_repeat_every_days():
    schedule = CustomSchedule(repeat_every_days=10)
    assert next_of(schedule, utc(2026, 3, 2, 9, 0)) == utc(2026, 3, 12, 9, 0)


# ============================================================
# TIMEZONES
# ============================================================

def test_due_time_is_local_wall_clock_across_dst():
    # US DST starts 2026-03-08: 09:00 EST is 14:00 UTC, 09:00 EDT is 13:00 UTC
    reference = utc(2026, 3, 7, 14, 0)
    result = next_of(DailySchedule(), reference, timezone="America/New_York")
    assert result == utc(2026, 3, 8, 13, 0)


def test_reference_date_is_taken_in_local_timezone():
    # 2026-03-02 23:30 UTC is already Tuesday 2026-03-03 in Tokyo
    reference = utc(2026, 3, 2, 23, 30)
    result = next_of(DailySchedule(), reference, timezone="Asia/Tokyo")
    assert result == utc(2026, 3, 4, 0, 0)  # Wednesday 09:00 JST


def test_twelve_hour_due_time():
    assert next_of(DailySchedule(), utc(2026, 3, 2, 9, 0), due_time="2:30pm") == utc(2026, 3, 3, 14, 30)


NEW_YORK = pytz.timezone("America/New_York")


# US DST 2026: starts Sunday 03-08, ends Sunday 11-01
@pytest.mark.parametrize("schedule", [
    DailySchedule(),
    WeeklySchedule(weekdays=["sat", "sun"]),
    MonthlySchedule(day_of_month=8),
    MonthlySchedule(mode=MonthlyMode.LAST_DAY),
    YearlySchedule(month=3, day=8),
    YearlySchedule(month=11, day=1),
], ids=["daily", "weekly", "monthly-day", "monthly-last", "yearly-march", "yearly-november"])
@pytest.mark.parametrize("day", [date(2026, 3, 7), date(2026, 3, 8), date(2026, 10, 31), date(2026, 11, 1)])
@pytest.mark.parametrize("due_time", ["09:00", "02:30", "00:00"])
@pytest.mark.parametrize("clock", ["midnight", "due", "last-minute"])
def test_next_occurrence_strictly_after_reference_across_dst(schedule, day, due_time, clock):
    wall = {
        "midnight": time(0, 0),
        "due": RecurrenceCalculator.parse_due_time(due_time),
        "last-minute": time(23, 59),
    }[clock]
    reference = localize(day, wall, NEW_YORK)

    result = RecurrenceCalculator.next_occurrence(
        schedule, reference, timezone="America/New_York", due_time=due_time
    )

    assert result > reference
    assert to_local_date(result, NEW_YORK) > day


# ============================================================
# FIRST OCCURRENCE
# ============================================================

def test_first_occurrence_same_day_when_due_time_not_passed():
    result = RecurrenceCalculator.first_occurrence(DailySchedule(), utc(2026, 3, 2, 8, 0), due_time="09:00")
    assert result == utc(2026, 3, 2, 9, 0)


def test_first_occurrence_weekly_from_midweek():
    schedule = WeeklySchedule(weekdays=[0, 2])
    result = RecurrenceCalculator.first_occurrence(schedule, utc(2026, 3, 3, 8, 0), due_time="09:00")
    assert result == utc(2026, 3, 4, 9, 0)


def test_first_occurrence_steps_forward_when_due_time_passed():
    schedule = WeeklySchedule(weekdays=[0, 2])
    result = RecurrenceCalculator.first_occurrence(schedule, utc(2026, 3, 2, 10, 0), due_time="09:00")
    assert result == utc(2026, 3, 4, 9, 0)


def test_first_occurrence_monthly_later_this_month_or_next():
    schedule = MonthlySchedule(day_of_month=15)
    assert RecurrenceCalculator.first_occurrence(schedule, utc(2026, 3, 2), due_time="09:00") == utc(2026, 3, 15, 9, 0)
    assert RecurrenceCalculator.first_occurrence(schedule, utc(2026, 3, 20), due_time="09:00") == utc(2026, 4, 15, 9, 0)


def test_first_occurrence_days_after_completion_is_start():
    start = utc(2026, 3, 2, 10, 15)
    assert RecurrenceCalculator.first_occurrence(DaysAfterCompletionSchedule(days=2), start) == start


def test_first_occurrence_custom_dates_includes_start_date():
    schedule = CustomSchedule(dates=[date(2026, 3, 2), date(2026, 3, 9)])
    result = RecurrenceCalculator.first_occurrence(schedule, utc(2026, 3, 2, 0, 0), due_time="09:00")
    assert result == utc(2026, 3, 2, 9, 0)


# ============================================================
# PARSING & VALIDATION
# ============================================================

def test_parse_schedule_dispatches_on_shape():
    schedule = RecurrenceCalculator.parse_schedule({"shape": "weekly", "weekdays": ["fri"]})
    assert isinstance(schedule, WeeklySchedule)
    assert schedule.weekdays == [4]


def test_parse_schedule_rejects_unknown_shape():
    with pytest.raises(InvalidScheduleError):
        RecurrenceCalculator.parse_schedule({"shape": "hourly"})


def test_parse_schedule_rejects_zero_interval():
    with pytest.raises(InvalidScheduleError):
        RecurrenceCalculator.parse_schedule({"shape": "daily", "interval": 0})


def test_parse_end_condition_defaults_to_never():
    condition = RecurrenceCalculator.parse_end_condition(None)
    assert condition.type == "never"


@pytest.mark.parametrize("schedule, behavior", [
    (WeeklySchedule(weekdays=[]), FiringBehavior.ON_SCHEDULE),
    (MonthlySchedule(), FiringBehavior.ON_SCHEDULE),
    (MonthlySchedule(mode=MonthlyMode.ORDINAL_WEEKDAY, week_of_month=2), FiringBehavior.ON_SCHEDULE),
    (MonthlySchedule(mode=MonthlyMode.ORDINAL_WEEKDAY, week_of_month=6, weekday=1), FiringBehavior.ON_SCHEDULE),
    (YearlySchedule(month=2, day=30), FiringBehavior.ON_SCHEDULE),
    (YearlySchedule(month=4, day=31), FiringBehavior.ON_SCHEDULE),
    (DaysAfterCompletionSchedule(days=2), FiringBehavior.ON_SCHEDULE),
    (CustomSchedule(), FiringBehavior.ON_SCHEDULE),
    (CustomSchedule(dates=[date(2026, 3, 2)], repeat_every_days=3), FiringBehavior.ON_SCHEDULE),
    (CustomSchedule(dates=[]), FiringBehavior.ON_SCHEDULE),
    (CustomSchedule(dates=[date(2026, 3, 9), date(2026, 3, 2)]), FiringBehavior.ON_SCHEDULE),
    (CustomSchedule(rule="FREQ=SOMETIMES"), FiringBehavior.ON_SCHEDULE),
])
def test_validate_rejects_inconsistent_schedules(schedule, behavior):
    with pytest.raises(InvalidScheduleError):
        RecurrenceCalculator.validate(schedule, behavior)


def test_validate_accepts_consistent_schedules():
    RecurrenceCalculator.validate(WeeklySchedule(weekdays=[0]))
    RecurrenceCalculator.validate(YearlySchedule(month=2, day=29))
    RecurrenceCalculator.validate(DaysAfterCompletionSchedule(days=2), FiringBehavior.AFTER_COMPLETION)
    RecurrenceCalculator.validate(CustomSchedule(rule="FREQ=MONTHLY;BYMONTHDAY=1"))


def test_validate_rejects_unknown_timezone_and_bad_due_time():
    with pytest.raises(InvalidScheduleError):
        RecurrenceCalculator.validate(DailySchedule(), timezone="Mars/Olympus")
    with pytest.raises(InvalidScheduleError):
        RecurrenceCalculator.validate(DailySchedule(), due_time="25:00")
