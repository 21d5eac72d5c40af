"""
Schedule arithmetic and lifecycle rules for recurrences.

Pure functions only: no storage, no I/O.
"""

from .exceptions import (
    RecurrenceError,
    InvalidScheduleError,
    ParentNotFoundError,
    ConcurrentFiringError,
    PersistenceError,
    InstanceCreationError,
    SideEffectError,
    RecurrenceNotFoundError,
    RecurrenceConflictError,
    RecurrenceStateError,
)
from .calculator import RecurrenceCalculator
from .end_conditions import should_end

__all__ = [
    "RecurrenceCalculator",
    "should_end",
    "RecurrenceError",
    "InvalidScheduleError",
    "ParentNotFoundError",
    "ConcurrentFiringError",
    "PersistenceError",
    "InstanceCreationError",
    "SideEffectError",
    "RecurrenceNotFoundError",
    "RecurrenceConflictError",
    "RecurrenceStateError",
]
