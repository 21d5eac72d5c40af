"""
Audit log repository for recurrence activity.

Logs every lifecycle action with:
- What happened (created, updated, paused, triggered, stopped, ...)
- Which recurrence and parent it concerned
- Who did it (user or the scheduler)
- Source (api, scheduler)
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from ...scheduling.exceptions import PersistenceError
from ..connection import get_database
from ..models import AuditLogDB

logger = logging.getLogger(__name__)


class AuditRepository:
    """Repository for audit log operations."""

    def __init__(self):
        self.db = get_database()

    async def log(
        self,
        action: str,
        changed_by: str,
        entity_type: str = "recurrence",
        entity_id: Optional[str] = None,
        workspace_id: Optional[str] = None,
        parent_id: Optional[str] = None,
        description: Optional[str] = None,
        source: str = "api",
        details: Optional[Dict[str, Any]] = None,
    ) -> AuditLogDB:
        """Log an action to the audit trail."""
        async with self.db.session() as session:
            try:
                log_entry = AuditLogDB(
                    action=action,
                    entity_type=entity_type,
                    entity_id=entity_id,
                    workspace_id=workspace_id,
                    parent_id=parent_id,
                    description=description,
                    changed_by=changed_by,
                    source=source,
                    details=details,
                )
                session.add(log_entry)
                await session.flush()

                logger.debug(f"Audit log: {action} on {entity_type}/{entity_id} by {changed_by}")
                return log_entry

            except SQLAlchemyError as e:
                logger.error(f"Error creating audit log: {e}")
                raise PersistenceError(f"Failed to write audit entry {action}: {e}") from e

    async def append(self, entry: Dict[str, Any]) -> AuditLogDB:
        """Append a prepared activity entry (as queued by the side-effect queue)."""
        return await self.log(**entry)

    async def get_entity_history(
        self,
        entity_id: str,
        entity_type: str = "recurrence",
        limit: int = 50,
    ) -> List[AuditLogDB]:
        """Get audit history for a recurrence, newest first."""
        async with self.db.session() as session:
            result = await session.execute(
                select(AuditLogDB)
                .where(
                    AuditLogDB.entity_type == entity_type,
                    AuditLogDB.entity_id == entity_id,
                )
                .order_by(AuditLogDB.timestamp.desc())
                .limit(limit)
            )
            return list(result.scalars().all())


# Singleton
_audit_repo: Optional[AuditRepository] = None


def get_audit_repository() -> AuditRepository:
    """Get the audit repository singleton."""
    global _audit_repo
    if _audit_repo is None:
        _audit_repo = AuditRepository()
    return _audit_repo
