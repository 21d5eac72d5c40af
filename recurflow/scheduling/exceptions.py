"""Exceptions raised by the recurrence engine."""


class RecurrenceError(Exception):
    """Base exception for recurrence engine errors."""
    pass


class InvalidScheduleError(RecurrenceError):
    """Schedule shape or options are malformed or inconsistent."""
    pass


class ParentNotFoundError(RecurrenceError):
    """Parent work item no longer exists."""

    def __init__(self, parent_id: str, recurrence_id: str = None):
        self.parent_id = parent_id
        self.recurrence_id = recurrence_id
        super().__init__(f"Parent work item {parent_id} not found")


class ConcurrentFiringError(RecurrenceError):
    """Firing claim for this occurrence is held by another worker."""
    pass


class PersistenceError(RecurrenceError):
    """Recurrence store write failed."""
    pass


class InstanceCreationError(RecurrenceError):
    """Work-item store failed to create the generated instance."""
    pass


class SideEffectError(RecurrenceError):
    """Notification or activity log dispatch failed."""
    pass


class RecurrenceNotFoundError(RecurrenceError):
    """Requested recurrence does not exist."""

    def __init__(self, recurrence_id: str):
        self.recurrence_id = recurrence_id
        super().__init__(f"Recurrence {recurrence_id} not found")


class RecurrenceConflictError(RecurrenceError):
    """An active recurrence already exists for the parent work item."""
    pass


class RecurrenceStateError(RecurrenceError):
    """Lifecycle transition is not allowed from the current status."""
    pass
