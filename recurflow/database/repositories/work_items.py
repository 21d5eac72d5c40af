"""
Work item repository.

Handles:
- Parent cards that recurrences are attached to
- Instances generated by recurrence firings (deduplicated per occurrence)
- Completion events for after-completion recurrences
"""

import logging
import uuid
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ...models.recurrence import DONE_STATUSES
from ...scheduling.exceptions import (
    InstanceCreationError,
    ParentNotFoundError,
    PersistenceError,
)
from ...utils.datetime_utils import utc_now
from ..connection import get_database
from ..models import WorkItemDB

logger = logging.getLogger(__name__)

CompletionCallback = Callable[[str, str, datetime], Awaitable[None]]


def _new_item_id() -> str:
    return f"TASK-{datetime.now().strftime('%Y%m%d')}-{uuid.uuid4().hex[:6].upper()}"


def _to_dict(item: WorkItemDB) -> Dict[str, Any]:
    return {
        "item_id": item.item_id,
        "parent_id": item.parent_id,
        "workspace_id": item.workspace_id,
        "kind": item.kind,
        "title": item.title,
        "description": item.description or "",
        "status": item.status,
        "priority": item.priority,
        "assignees": list(item.assignees or []),
        "tags": list(item.tags or []),
        "position": item.position,
        "due_at": item.due_at,
        "start_at": item.start_at,
        "completed_at": item.completed_at,
        "recurrence_id": item.recurrence_id,
        "scheduled_for": item.scheduled_for,
    }


class WorkItemRepository:
    """Repository for work item operations."""

    def __init__(self):
        self.db = get_database()
        self._completion_callbacks: List[CompletionCallback] = []

    # ==================== PARENTS ====================

    async def get_parent(self, parent_id: str) -> Optional[Dict[str, Any]]:
        """Get a parent work item, or None if it no longer exists."""
        async with self.db.session() as session:
            try:
                result = await session.execute(
                    select(WorkItemDB).where(WorkItemDB.item_id == parent_id)
                )
                item = result.scalar_one_or_none()
                return _to_dict(item) if item else None

            except SQLAlchemyError as e:
                raise PersistenceError(f"Failed to load work item {parent_id}: {e}") from e

    async def delete_item(self, item_id: str) -> bool:
        """Delete a work item. Generated children are kept."""
        async with self.db.session() as session:
            try:
                result = await session.execute(
                    delete(WorkItemDB).where(WorkItemDB.item_id == item_id)
                )
                deleted = result.rowcount > 0
                if deleted:
                    logger.info(f"Deleted work item {item_id}")
                return deleted

            except SQLAlchemyError as e:
                raise PersistenceError(f"Failed to delete work item {item_id}: {e}") from e

    # ==================== GENERATED INSTANCES ====================

    async def _find_occurrence(self, session, recurrence_id: str, scheduled_for: datetime) -> Optional[str]:
        result = await session.execute(
            select(WorkItemDB.item_id).where(
                WorkItemDB.recurrence_id == recurrence_id,
                WorkItemDB.scheduled_for == scheduled_for,
            )
        )
        return result.scalars().first()

    async def create_instance(
        self,
        parent_id: str,
        fields: Dict[str, Any],
        dates: Dict[str, Optional[datetime]],
    ) -> str:
        """
        Create the work item for one occurrence and return its ID.

        fields carries the template values plus recurrence_id, scheduled_for
        and kind; dates carries due_at and start_at. If an item already
        exists for the same (recurrence_id, scheduled_for) its ID is returned
        instead of creating a second one.

        Raises:
            ParentNotFoundError: Parent was deleted
            InstanceCreationError: Any other store failure
        """
        recurrence_id = fields["recurrence_id"]
        scheduled_for = fields["scheduled_for"]

        try:
            async with self.db.session() as session:
                existing = await self._find_occurrence(session, recurrence_id, scheduled_for)
                if existing:
                    logger.info(
                        f"Instance for {recurrence_id} @ {scheduled_for} already exists: {existing}"
                    )
                    return existing

                result = await session.execute(
                    select(WorkItemDB).where(WorkItemDB.item_id == parent_id)
                )
                parent = result.scalar_one_or_none()
                if parent is None:
                    raise ParentNotFoundError(parent_id, recurrence_id)

                count_result = await session.execute(
                    select(func.count(WorkItemDB.id)).where(WorkItemDB.parent_id == parent_id)
                )
                position = count_result.scalar() or 0

                item = WorkItemDB(
                    item_id=fields.get("instance_id") or _new_item_id(),
                    parent_id=None if fields.get("kind") == "task" else parent_id,
                    workspace_id=fields.get("workspace_id") or parent.workspace_id,
                    kind=fields.get("kind", "subtask"),
                    title=fields["title"],
                    description=fields.get("description"),
                    status="todo",
                    priority=fields.get("priority", "medium"),
                    assignees=list(fields.get("assignees") or []),
                    tags=list(fields.get("tags") or []),
                    position=position,
                    due_at=dates.get("due_at"),
                    start_at=dates.get("start_at"),
                    recurrence_id=recurrence_id,
                    scheduled_for=scheduled_for,
                    created_by=fields.get("created_by", "recurrence"),
                )
                session.add(item)
                await session.flush()

                logger.info(f"Created instance {item.item_id} under {parent_id} for {recurrence_id}")
                return item.item_id

        except IntegrityError:
            # Lost an insert race for the same occurrence
            async with self.db.session() as session:
                existing = await self._find_occurrence(session, recurrence_id, scheduled_for)
            if existing:
                return existing
            raise InstanceCreationError(
                f"Constraint violation creating instance for {recurrence_id} @ {scheduled_for}"
            )

        except SQLAlchemyError as e:
            logger.error(f"Instance creation failed for {recurrence_id}: {e}", exc_info=True)
            raise InstanceCreationError(f"Failed to create instance: {e}") from e

    # ==================== COMPLETION ====================

    def subscribe_completion(self, callback: CompletionCallback) -> None:
        """Register a coroutine called as callback(instance_id, recurrence_id, completed_at)."""
        self._completion_callbacks.append(callback)

    async def mark_complete(
        self,
        item_id: str,
        completed_at: Optional[datetime] = None,
    ) -> bool:
        """Mark a work item done and notify completion subscribers."""
        completed_at = completed_at or utc_now()

        async with self.db.session() as session:
            try:
                result = await session.execute(
                    select(WorkItemDB).where(WorkItemDB.item_id == item_id)
                )
                item = result.scalar_one_or_none()
                if item is None:
                    return False
                if item.status in DONE_STATUSES:
                    logger.debug(f"Work item {item_id} already completed")
                    return True

                item.status = "completed"
                item.completed_at = completed_at
                recurrence_id = item.recurrence_id
                await session.flush()

            except SQLAlchemyError as e:
                raise PersistenceError(f"Failed to complete work item {item_id}: {e}") from e

        logger.info(f"Completed work item {item_id}")

        if recurrence_id:
            for callback in self._completion_callbacks:
                try:
                    await callback(item_id, recurrence_id, completed_at)
                except Exception as e:
                    logger.error(f"Completion subscriber failed for {item_id}: {e}", exc_info=True)

        return True


# Singleton
_work_item_repo: Optional[WorkItemRepository] = None


def get_work_item_repository() -> WorkItemRepository:
    """Get the work item repository singleton."""
    global _work_item_repo
    if _work_item_repo is None:
        _work_item_repo = WorkItemRepository()
    return _work_item_repo
