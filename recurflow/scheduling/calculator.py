"""
Schedule calculator for recurring tasks.

Pure calendar arithmetic: given a schedule shape and a reference instant,
work out the next occurrence. Dates are computed in the recurrence's own
timezone and returned as aware UTC datetimes.
"""

import calendar
import logging
from datetime import date, datetime, time, timedelta
from typing import Any, Optional, Union

import pytz
from dateutil.rrule import rrule, rruleset, rrulestr
from pydantic import BaseModel, TypeAdapter, ValidationError

from ..models.recurrence import (
    CustomSchedule,
    DailySchedule,
    DaysAfterCompletionSchedule,
    EndCondition,
    FiringBehavior,
    MonthlyMode,
    MonthlySchedule,
    Schedule,
    WeeklySchedule,
    YearlySchedule,
)
from ..utils.datetime_utils import (
    ensure_utc,
    get_timezone,
    localize,
    parse_time,
    to_local_date,
)
from .exceptions import InvalidScheduleError

logger = logging.getLogger(__name__)

_SCHEDULE_ADAPTER = TypeAdapter(Schedule)
_END_CONDITION_ADAPTER = TypeAdapter(EndCondition)

_SCHEDULE_TYPES = (
    DailySchedule,
    WeeklySchedule,
    MonthlySchedule,
    YearlySchedule,
    DaysAfterCompletionSchedule,
    CustomSchedule,
)


def _add_months(year: int, month: int, months: int) -> tuple:
    total = year * 12 + (month - 1) + months
    return total // 12, total % 12 + 1


def _days_in_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


class RecurrenceCalculator:
    """Calculate occurrences for every supported schedule shape."""

    WEEKEND = (5, 6)

    # ==================== PARSING ====================

    @classmethod
    def parse_schedule(cls, data: Union[dict, BaseModel]) -> Schedule:
        """Parse a schedule payload into its tagged variant."""
        if isinstance(data, _SCHEDULE_TYPES):
            return data
        if isinstance(data, BaseModel):
            data = data.model_dump()
        try:
            return _SCHEDULE_ADAPTER.validate_python(data)
        except ValidationError as e:
            raise InvalidScheduleError(f"Invalid schedule: {e}") from e

    @classmethod
    def parse_end_condition(cls, data: Any) -> EndCondition:
        """Parse an end condition payload; None means never."""
        if data is None:
            data = {"type": "never"}
        if isinstance(data, BaseModel):
            data = data.model_dump()
        try:
            return _END_CONDITION_ADAPTER.validate_python(data)
        except ValidationError as e:
            raise InvalidScheduleError(f"Invalid end condition: {e}") from e

    @classmethod
    def parse_due_time(cls, due_time: str) -> time:
        try:
            return parse_time(due_time)
        except ValueError as e:
            raise InvalidScheduleError(str(e)) from e

    @classmethod
    def get_timezone(cls, name: str) -> pytz.BaseTzInfo:
        try:
            return get_timezone(name)
        except pytz.UnknownTimeZoneError as e:
            raise InvalidScheduleError(f"Unknown timezone: {name!r}") from e

    # ==================== VALIDATION ====================

    @classmethod
    def validate(
        cls,
        schedule: Schedule,
        firing_behavior: FiringBehavior = FiringBehavior.ON_SCHEDULE,
        timezone: str = "UTC",
        due_time: str = "23:00",
    ) -> None:
        """
        Reject internally inconsistent schedules.

        Raises:
            InvalidScheduleError: Describing the first problem found
        """
        cls.get_timezone(timezone)
        cls.parse_due_time(due_time)

        if isinstance(schedule, WeeklySchedule):
            if not schedule.weekdays:
                raise InvalidScheduleError("Weekly schedule needs at least one weekday")

        elif isinstance(schedule, MonthlySchedule):
            if schedule.mode == MonthlyMode.DAY_OF_MONTH and schedule.day_of_month is None:
                raise InvalidScheduleError("Monthly day_of_month schedule needs day_of_month")
            if schedule.mode == MonthlyMode.ORDINAL_WEEKDAY:
                if schedule.week_of_month not in (1, 2, 3, 4, 5, -1):
                    raise InvalidScheduleError("week_of_month must be 1-5 or -1 (last)")
                if schedule.weekday is None:
                    raise InvalidScheduleError("Ordinal weekday schedule needs a weekday")

        elif isinstance(schedule, YearlySchedule):
            # 2000 is a leap year, so Feb 29 passes and Feb 30 does not
            if schedule.day > _days_in_month(2000, schedule.month):
                raise InvalidScheduleError(
                    f"Month {schedule.month} never has a day {schedule.day}"
                )

        elif isinstance(schedule, DaysAfterCompletionSchedule):
            if firing_behavior != FiringBehavior.AFTER_COMPLETION:
                raise InvalidScheduleError(
                    "days_after_completion requires after_completion firing behavior"
                )

        elif isinstance(schedule, CustomSchedule):
            sources = [
                schedule.dates is not None,
                schedule.rule is not None,
                schedule.repeat_every_days is not None,
            ]
            if sum(sources) != 1:
                raise InvalidScheduleError(
                    "Custom schedule needs exactly one of dates, rule or repeat_every_days"
                )
            if schedule.dates is not None:
                if not schedule.dates:
                    raise InvalidScheduleError("Custom date list is empty")
                if any(a >= b for a, b in zip(schedule.dates, schedule.dates[1:])):
                    raise InvalidScheduleError("Custom dates must be strictly ascending")
            if schedule.rule is not None:
                cls._build_rule(schedule, date.today())

    # ==================== OCCURRENCES ====================

    @classmethod
    def next_occurrence(
        cls,
        schedule: Schedule,
        reference: datetime,
        timezone: str = "UTC",
        due_time: str = "23:00",
        skip_weekends: bool = False,
    ) -> Optional[datetime]:
        """
        Calculate the occurrence that follows a reference instant.

        Returns None when a custom date list or rule has no further dates.
        """
        reference = ensure_utc(reference)

        if isinstance(schedule, DaysAfterCompletionSchedule):
            return reference + timedelta(days=schedule.days)

        tz = cls.get_timezone(timezone)
        at = cls.parse_due_time(due_time)
        ref_date = to_local_date(reference, tz)

        day = cls._next_date(schedule, ref_date)
        if day is None:
            return None

        return localize(cls._apply_skip_weekends(schedule, day, skip_weekends), at, tz)

    @classmethod
    def first_occurrence(
        cls,
        schedule: Schedule,
        start: datetime,
        timezone: str = "UTC",
        due_time: str = "23:00",
        skip_weekends: bool = False,
    ) -> Optional[datetime]:
        """Calculate the first occurrence on or after a start instant."""
        start = ensure_utc(start)

        if isinstance(schedule, DaysAfterCompletionSchedule):
            return start

        tz = cls.get_timezone(timezone)
        at = cls.parse_due_time(due_time)
        start_date = to_local_date(start, tz)

        day = cls._first_date(schedule, start_date)
        if day is not None:
            candidate = localize(cls._apply_skip_weekends(schedule, day, skip_weekends), at, tz)
            if candidate >= start:
                return candidate

        # First candidate already passed its due time, step forward from the start
        return cls.next_occurrence(schedule, start, timezone, due_time, skip_weekends)

    # ==================== SHAPE ARITHMETIC ====================

    @classmethod
    def _next_date(cls, schedule: Schedule, ref_date: date) -> Optional[date]:
        if isinstance(schedule, DailySchedule):
            return ref_date + timedelta(days=schedule.interval)

        if isinstance(schedule, WeeklySchedule):
            window_start = ref_date - timedelta(days=ref_date.weekday())
            for offset in range(ref_date.weekday() + 1, 7):
                if offset in schedule.weekdays:
                    return window_start + timedelta(days=offset)
            next_window = window_start + timedelta(weeks=schedule.interval)
            return next_window + timedelta(days=schedule.weekdays[0])

        if isinstance(schedule, MonthlySchedule):
            year, month = _add_months(ref_date.year, ref_date.month, schedule.interval)
            return cls._day_in_month(schedule, year, month)

        if isinstance(schedule, YearlySchedule):
            return cls._day_in_year(schedule, ref_date.year + schedule.interval)

        if isinstance(schedule, CustomSchedule):
            if schedule.dates is not None:
                return next((d for d in schedule.dates if d > ref_date), None)
            if schedule.rule is not None:
                rule = cls._build_rule(schedule, ref_date)
                found = rule.after(datetime.combine(ref_date, time.max))
                return found.date() if found else None
            return ref_date + timedelta(days=schedule.repeat_every_days)

        raise InvalidScheduleError(f"Unsupported schedule shape: {type(schedule).__name__}")

    @classmethod
    def _first_date(cls, schedule: Schedule, start_date: date) -> Optional[date]:
        if isinstance(schedule, DailySchedule):
            return start_date

        if isinstance(schedule, WeeklySchedule):
            for offset in range(7):
                candidate = start_date + timedelta(days=offset)
                if candidate.weekday() in schedule.weekdays:
                    return candidate
            return None

        if isinstance(schedule, MonthlySchedule):
            candidate = cls._day_in_month(schedule, start_date.year, start_date.month)
            return candidate if candidate >= start_date else None

        if isinstance(schedule, YearlySchedule):
            candidate = cls._day_in_year(schedule, start_date.year)
            return candidate if candidate >= start_date else None

        if isinstance(schedule, CustomSchedule):
            if schedule.dates is not None:
                return next((d for d in schedule.dates if d >= start_date), None)
            if schedule.rule is not None:
                rule = cls._build_rule(schedule, start_date)
                found = rule.after(datetime.combine(start_date, time.min), inc=True)
                return found.date() if found else None
            return start_date

        raise InvalidScheduleError(f"Unsupported schedule shape: {type(schedule).__name__}")

    @classmethod
    def _day_in_month(cls, schedule: MonthlySchedule, year: int, month: int) -> date:
        last_day = _days_in_month(year, month)

        if schedule.mode == MonthlyMode.FIRST_DAY:
            return date(year, month, 1)

        if schedule.mode == MonthlyMode.LAST_DAY:
            return date(year, month, last_day)

        if schedule.mode == MonthlyMode.ORDINAL_WEEKDAY:
            if schedule.week_of_month == -1:
                last = date(year, month, last_day)
                return last - timedelta(days=(last.weekday() - schedule.weekday) % 7)
            first = date(year, month, 1)
            day = 1 + (schedule.weekday - first.weekday()) % 7 + (schedule.week_of_month - 1) * 7
            # A fifth weekday that does not exist falls back to the last one
            while day > last_day:
                day -= 7
            return date(year, month, day)

        # Clamp to the last day, never roll into the following month
        return date(year, month, min(schedule.day_of_month, last_day))

    @classmethod
    def _day_in_year(cls, schedule: YearlySchedule, year: int) -> date:
        return date(year, schedule.month, min(schedule.day, _days_in_month(year, schedule.month)))

    @classmethod
    def _build_rule(cls, schedule: CustomSchedule, fallback_start: date) -> Union[rrule, rruleset]:
        dtstart = datetime.combine(schedule.rule_start or fallback_start, time.min)
        try:
            return rrulestr(schedule.rule, dtstart=dtstart)
        except (ValueError, TypeError, KeyError) as e:
            raise InvalidScheduleError(f"Invalid custom rule {schedule.rule!r}: {e}") from e

    @classmethod
    def _apply_skip_weekends(cls, schedule: Schedule, day: date, skip_weekends: bool) -> date:
        if skip_weekends or getattr(schedule, "skip_weekends", False):
            while day.weekday() in cls.WEEKEND:
                day += timedelta(days=1)
        return day
