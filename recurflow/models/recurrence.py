"""Recurrence data models for the scheduling engine."""

from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union
import uuid

from pydantic import BaseModel, Field, field_validator

from ..utils.datetime_utils import ensure_utc, utc_now


class ScheduleShape(str, Enum):
    """Supported schedule shapes."""
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"
    DAYS_AFTER_COMPLETION = "days_after_completion"
    CUSTOM = "custom"


class FiringBehavior(str, Enum):
    """When a recurrence produces its next instance."""
    ON_SCHEDULE = "on_schedule"            # Strictly by calendar time
    AFTER_COMPLETION = "after_completion"  # Once the previous instance is done


class RecurrenceStatus(str, Enum):
    """Lifecycle states of a recurrence."""
    ACTIVE = "active"
    PAUSED = "paused"
    PARENT_MISSING = "parent_missing"  # Auto-paused, parent was deleted
    STOPPED = "stopped"                # Hard stop by a user
    COMPLETED = "completed"            # End condition reached


STATUS_LABELS = {
    RecurrenceStatus.ACTIVE: "active",
    RecurrenceStatus.PAUSED: "paused",
    RecurrenceStatus.PARENT_MISSING: "paused - parent not found",
    RecurrenceStatus.STOPPED: "stopped",
    RecurrenceStatus.COMPLETED: "completed",
}


class MonthlyMode(str, Enum):
    """How the target day inside a month is chosen."""
    DAY_OF_MONTH = "day_of_month"
    FIRST_DAY = "first_day"
    LAST_DAY = "last_day"
    ORDINAL_WEEKDAY = "ordinal_weekday"  # e.g. second Tuesday, last Friday


class InstanceKind(str, Enum):
    SUBTASK = "subtask"
    TASK = "task"


# Work item statuses that count as finished
DONE_STATUSES = ("completed", "done")


WEEKDAYS = {
    "monday": 0, "tuesday": 1, "wednesday": 2, "thursday": 3,
    "friday": 4, "saturday": 5, "sunday": 6,
    "mon": 0, "tue": 1, "wed": 2, "thu": 3, "fri": 4, "sat": 5, "sun": 6
}


def _weekday_number(value) -> int:
    if isinstance(value, str):
        key = value.lower().strip()
        if key in WEEKDAYS:
            return WEEKDAYS[key]
        if key.isdigit():
            value = int(key)
        else:
            raise ValueError(f"Unknown weekday: {value!r}")
    if not isinstance(value, int) or not 0 <= value <= 6:
        raise ValueError(f"Weekday must be 0 (Monday) to 6 (Sunday), got {value!r}")
    return value


def _new_recurrence_id() -> str:
    return f"REC-{datetime.now().strftime('%Y%m%d')}-{uuid.uuid4().hex[:8].upper()}"


# ==================== SCHEDULE SHAPES ====================

class DailySchedule(BaseModel):
    shape: Literal["daily"] = "daily"
    interval: int = Field(default=1, ge=1)
    skip_weekends: bool = False


class WeeklySchedule(BaseModel):
    shape: Literal["weekly"] = "weekly"
    interval: int = Field(default=1, ge=1)
    weekdays: List[int] = Field(default_factory=list)

    @field_validator("weekdays", mode="before")
    @classmethod
    def _normalize_weekdays(cls, value):
        if value is None:
            return []
        return sorted({_weekday_number(day) for day in value})


class MonthlySchedule(BaseModel):
    shape: Literal["monthly"] = "monthly"
    interval: int = Field(default=1, ge=1)
    mode: MonthlyMode = MonthlyMode.DAY_OF_MONTH
    day_of_month: Optional[int] = Field(default=None, ge=1, le=31)
    week_of_month: Optional[int] = None  # 1..5, or -1 for the last one
    weekday: Optional[int] = None

    @field_validator("weekday", mode="before")
    @classmethod
    def _normalize_weekday(cls, value):
        if value is None:
            return None
        return _weekday_number(value)


class YearlySchedule(BaseModel):
    shape: Literal["yearly"] = "yearly"
    interval: int = Field(default=1, ge=1)
    month: int = Field(ge=1, le=12)
    day: int = Field(ge=1, le=31)


class DaysAfterCompletionSchedule(BaseModel):
    shape: Literal["days_after_completion"] = "days_after_completion"
    days: int = Field(default=1, ge=1)


class CustomSchedule(BaseModel):
    shape: Literal["custom"] = "custom"
    dates: Optional[List[date]] = None
    rule: Optional[str] = None  # RFC 5545 RRULE, e.g. "FREQ=WEEKLY;BYDAY=MO,TH"
    rule_start: Optional[date] = None  # DTSTART anchor for the rule
    repeat_every_days: Optional[int] = Field(default=None, ge=1)


Schedule = Annotated[
    Union[
        DailySchedule,
        WeeklySchedule,
        MonthlySchedule,
        YearlySchedule,
        DaysAfterCompletionSchedule,
        CustomSchedule,
    ],
    Field(discriminator="shape"),
]


# ==================== END CONDITIONS ====================

class NeverEnds(BaseModel):
    type: Literal["never"] = "never"


class EndAfterOccurrences(BaseModel):
    type: Literal["after_occurrences"] = "after_occurrences"
    count: int = Field(ge=1)


class EndOnOrAfterDate(BaseModel):
    type: Literal["on_or_after_date"] = "on_or_after_date"
    end_date: date


EndCondition = Annotated[
    Union[NeverEnds, EndAfterOccurrences, EndOnOrAfterDate],
    Field(discriminator="type"),
]


# ==================== DEFINITION ====================

class InstanceTemplate(BaseModel):
    """Fields copied onto every generated instance."""
    title: Optional[str] = None
    description: str = ""
    priority: str = "medium"
    assignees: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    due_offset_days: int = 0                  # Due date relative to the occurrence
    start_offset_days: Optional[int] = Field(default=None, ge=0)  # Days before due
    create_as_task: bool = False              # Top-level task instead of subtask


class RecurrenceDefinition(BaseModel):
    """A schedule attached to exactly one parent work item."""

    # Identification
    recurrence_id: str = Field(default_factory=_new_recurrence_id)
    parent_id: str
    workspace_id: str

    # Schedule
    schedule: Schedule
    firing_behavior: FiringBehavior = FiringBehavior.ON_SCHEDULE
    end_condition: EndCondition = Field(default_factory=NeverEnds)

    # Timing
    due_time: str = "23:00"
    start_at: Optional[datetime] = None
    timezone: str = "UTC"
    skip_weekends: bool = False

    template: InstanceTemplate = Field(default_factory=InstanceTemplate)

    # Lifecycle
    status: RecurrenceStatus = RecurrenceStatus.ACTIVE
    status_reason: Optional[str] = None
    next_occurrence: Optional[datetime] = None
    last_occurrence: Optional[datetime] = None
    completed_occurrences: int = Field(default=0, ge=0)
    generated_instance_ids: List[str] = Field(default_factory=list)

    # Metadata
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator(
        "start_at", "next_occurrence", "last_occurrence", "created_at", "updated_at"
    )
    @classmethod
    def _as_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)

    @property
    def is_active(self) -> bool:
        return self.status == RecurrenceStatus.ACTIVE

    @property
    def status_label(self) -> str:
        return STATUS_LABELS[self.status]

    @property
    def awaiting_completion(self) -> bool:
        """Active after-completion recurrence waiting on its latest instance."""
        return (
            self.is_active
            and self.firing_behavior == FiringBehavior.AFTER_COMPLETION
            and self.next_occurrence is None
        )

    @property
    def latest_instance_id(self) -> Optional[str]:
        return self.generated_instance_ids[-1] if self.generated_instance_ids else None

    def deactivate(self, status: RecurrenceStatus, reason: Optional[str] = None) -> None:
        """Move to an inactive status, clearing the next occurrence."""
        self.status = status
        self.status_reason = reason
        self.next_occurrence = None


class GeneratedInstance(BaseModel):
    """A concrete work item produced by one firing."""
    instance_id: str
    parent_id: str
    workspace_id: str
    recurrence_id: str
    scheduled_for: datetime
    kind: InstanceKind = InstanceKind.SUBTASK
    title: str
    description: str = ""
    priority: str = "medium"
    assignees: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    due_at: Optional[datetime] = None
    start_at: Optional[datetime] = None
    status: str = "todo"
    created_at: datetime = Field(default_factory=utc_now)


# ==================== FIRING RESULTS ====================

class FireOutcome(str, Enum):
    FIRED = "fired"
    NOOP = "noop"


class NoOpReason(str, Enum):
    INACTIVE = "inactive"
    NOT_DUE = "not_due"
    AWAITING_COMPLETION = "awaiting_completion"
    ALREADY_CLAIMED = "already_claimed"


@dataclass
class FireResult:
    """Outcome of a single firing attempt."""
    outcome: FireOutcome
    recurrence_id: str
    instance: Optional[GeneratedInstance] = None
    reason: Optional[NoOpReason] = None
    definition: Optional[RecurrenceDefinition] = None

    @property
    def fired(self) -> bool:
        return self.outcome == FireOutcome.FIRED

    @classmethod
    def noop(cls, recurrence_id: str, reason: NoOpReason) -> "FireResult":
        return cls(outcome=FireOutcome.NOOP, recurrence_id=recurrence_id, reason=reason)
