from .recurrence import (
    ScheduleShape,
    FiringBehavior,
    RecurrenceStatus,
    MonthlyMode,
    InstanceKind,
    DONE_STATUSES,
    DailySchedule,
    WeeklySchedule,
    MonthlySchedule,
    YearlySchedule,
    DaysAfterCompletionSchedule,
    CustomSchedule,
    Schedule,
    NeverEnds,
    EndAfterOccurrences,
    EndOnOrAfterDate,
    EndCondition,
    InstanceTemplate,
    RecurrenceDefinition,
    GeneratedInstance,
    FireOutcome,
    NoOpReason,
    FireResult,
)

__all__ = [
    "ScheduleShape",
    "FiringBehavior",
    "RecurrenceStatus",
    "MonthlyMode",
    "InstanceKind",
    "DONE_STATUSES",
    "DailySchedule",
    "WeeklySchedule",
    "MonthlySchedule",
    "YearlySchedule",
    "DaysAfterCompletionSchedule",
    "CustomSchedule",
    "Schedule",
    "NeverEnds",
    "EndAfterOccurrences",
    "EndOnOrAfterDate",
    "EndCondition",
    "InstanceTemplate",
    "RecurrenceDefinition",
    "GeneratedInstance",
    "FireOutcome",
    "NoOpReason",
    "FireResult",
]
