"""
Repository classes for database operations.

Each repository handles CRUD and queries for its entity type.
"""

from .recurring import RecurrenceRepository, get_recurrence_repository
from .work_items import WorkItemRepository, get_work_item_repository
from .audit import AuditRepository, get_audit_repository

__all__ = [
    "RecurrenceRepository",
    "get_recurrence_repository",
    "WorkItemRepository",
    "get_work_item_repository",
    "AuditRepository",
    "get_audit_repository",
]
