"""End-condition evaluation for recurrences."""

from datetime import datetime
from typing import Optional

from ..models.recurrence import (
    EndAfterOccurrences,
    EndOnOrAfterDate,
    NeverEnds,
    RecurrenceDefinition,
)
from ..utils.datetime_utils import get_timezone, to_local_date


def should_end(definition: RecurrenceDefinition, fired_at: Optional[datetime] = None) -> bool:
    """
    Decide whether a recurrence has produced its last occurrence.

    Called after a firing has updated the counters and the candidate
    next_occurrence, so the occurrence that meets the bound is still
    generated. For a date bound with no candidate yet (after-completion
    recurrences waiting on their instance) the firing time is tested.
    """
    condition = definition.end_condition

    if isinstance(condition, NeverEnds):
        return False

    if isinstance(condition, EndAfterOccurrences):
        return definition.completed_occurrences >= condition.count

    if isinstance(condition, EndOnOrAfterDate):
        candidate = definition.next_occurrence or fired_at
        if candidate is None:
            return False
        tz = get_timezone(definition.timezone)
        return to_local_date(candidate, tz) >= condition.end_date

    return False
