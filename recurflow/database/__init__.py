"""
PostgreSQL database module for Recurflow.

Handles:
- Recurrence definitions, firing claims and instance ledgers
- Work items (parents and generated instances)
- Activity/audit logs
"""

from .connection import (
    get_database,
    Database,
    init_database,
    close_database,
)
from .models import (
    Base,
    RecurringTaskDB,
    WorkItemDB,
    AuditLogDB,
)

__all__ = [
    "get_database",
    "Database",
    "init_database",
    "close_database",
    "Base",
    "RecurringTaskDB",
    "WorkItemDB",
    "AuditLogDB",
]
