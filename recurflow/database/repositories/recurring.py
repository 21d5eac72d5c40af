"""
Repository for recurrence definitions.

Handles persistence of recurrence definitions, their generated-instance
ledger, and the firing claim that keeps concurrent firings of the same
occurrence from both generating an instance.
"""

import functools
import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import delete, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ...models.recurrence import RecurrenceDefinition
from ...scheduling.exceptions import (
    ConcurrentFiringError,
    PersistenceError,
    RecurrenceConflictError,
    RecurrenceNotFoundError,
)
from ..connection import get_database
from ..models import RecurringTaskDB, WorkItemDB

logger = logging.getLogger(__name__)


def _wrap_db_errors(func):
    """Surface driver/ORM failures as PersistenceError."""
    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except IntegrityError as e:
            raise RecurrenceConflictError(f"Recurrence constraint violated: {e.orig}") from e
        except SQLAlchemyError as e:
            raise PersistenceError(f"{func.__name__} failed: {e}") from e
    return wrapper


def _to_model(row: RecurringTaskDB) -> RecurrenceDefinition:
    schedule = dict(row.schedule_options or {})
    schedule["shape"] = row.schedule_shape
    return RecurrenceDefinition(
        recurrence_id=row.recurrence_id,
        parent_id=row.parent_id,
        workspace_id=row.workspace_id,
        schedule=schedule,
        firing_behavior=row.firing_behavior,
        end_condition=row.end_condition,
        due_time=row.due_time,
        start_at=row.start_at,
        timezone=row.timezone,
        skip_weekends=bool(row.skip_weekends),
        template=row.template or {},
        status=row.status,
        status_reason=row.status_reason,
        next_occurrence=row.next_occurrence,
        last_occurrence=row.last_occurrence,
        completed_occurrences=row.completed_occurrences or 0,
        generated_instance_ids=list(row.generated_instance_ids or []),
        created_by=row.created_by,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _apply_config(row: RecurringTaskDB, definition: RecurrenceDefinition) -> None:
    """Copy user-editable fields and status onto a row."""
    schedule = definition.schedule.model_dump(mode="json")
    row.schedule_shape = schedule.pop("shape")
    row.schedule_options = schedule
    row.firing_behavior = definition.firing_behavior.value
    row.end_condition = definition.end_condition.model_dump(mode="json")
    row.due_time = definition.due_time
    row.start_at = definition.start_at
    row.timezone = definition.timezone
    row.skip_weekends = definition.skip_weekends
    row.template = definition.template.model_dump(mode="json")
    _apply_status(row, definition)


def _apply_status(row: RecurringTaskDB, definition: RecurrenceDefinition) -> None:
    row.status = definition.status.value
    row.status_reason = definition.status_reason
    row.is_active = definition.is_active
    row.next_occurrence = definition.next_occurrence


class RecurrenceRepository:
    """Repository for recurrence definition operations."""

    def __init__(self):
        self.db = get_database()

    async def _get_row(self, session, recurrence_id: str, for_update: bool = False) -> Optional[RecurringTaskDB]:
        stmt = select(RecurringTaskDB).where(RecurringTaskDB.recurrence_id == recurrence_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    # ==================== CRUD ====================

    @_wrap_db_errors
    async def create(self, definition: RecurrenceDefinition) -> RecurrenceDefinition:
        """Insert a new recurrence, rejecting a second active one per parent."""
        async with self.db.session() as session:
            result = await session.execute(
                select(RecurringTaskDB.recurrence_id).where(
                    RecurringTaskDB.parent_id == definition.parent_id,
                    RecurringTaskDB.is_active == True,
                )
            )
            existing = result.scalars().first()
            if existing:
                raise RecurrenceConflictError(
                    f"Active recurrence {existing} already exists for {definition.parent_id}"
                )

            row = RecurringTaskDB(
                recurrence_id=definition.recurrence_id,
                parent_id=definition.parent_id,
                workspace_id=definition.workspace_id,
                completed_occurrences=definition.completed_occurrences,
                generated_instance_ids=list(definition.generated_instance_ids),
                last_occurrence=definition.last_occurrence,
                created_by=definition.created_by,
                created_at=definition.created_at,
                updated_at=definition.updated_at,
            )
            _apply_config(row, definition)
            session.add(row)
            await session.flush()

            logger.info(f"Created recurrence {definition.recurrence_id} for {definition.parent_id}")
            return _to_model(row)

    @_wrap_db_errors
    async def load(self, recurrence_id: str) -> Optional[RecurrenceDefinition]:
        """Get a recurrence by ID."""
        async with self.db.session() as session:
            row = await self._get_row(session, recurrence_id)
            return _to_model(row) if row else None

    @_wrap_db_errors
    async def find_active_by_parent(self, parent_id: str) -> Optional[RecurrenceDefinition]:
        """Get the active recurrence attached to a parent work item."""
        async with self.db.session() as session:
            result = await session.execute(
                select(RecurringTaskDB).where(
                    RecurringTaskDB.parent_id == parent_id,
                    RecurringTaskDB.is_active == True,
                )
            )
            row = result.scalars().first()
            return _to_model(row) if row else None

    @_wrap_db_errors
    async def find_by_instance(self, instance_id: str) -> Optional[RecurrenceDefinition]:
        """Get the recurrence that generated a work item."""
        async with self.db.session() as session:
            result = await session.execute(
                select(RecurringTaskDB)
                .join(WorkItemDB, WorkItemDB.recurrence_id == RecurringTaskDB.recurrence_id)
                .where(WorkItemDB.item_id == instance_id)
            )
            row = result.scalars().first()
            return _to_model(row) if row else None

    @_wrap_db_errors
    async def list_for_workspace(
        self,
        workspace_id: str,
        include_inactive: bool = False,
    ) -> List[RecurrenceDefinition]:
        """List recurrences in a workspace, newest first."""
        async with self.db.session() as session:
            stmt = select(RecurringTaskDB).where(RecurringTaskDB.workspace_id == workspace_id)
            if not include_inactive:
                stmt = stmt.where(RecurringTaskDB.is_active == True)
            stmt = stmt.order_by(RecurringTaskDB.created_at.desc())
            result = await session.execute(stmt)
            return [_to_model(row) for row in result.scalars().all()]

    @_wrap_db_errors
    async def find_due(self, now: datetime) -> List[str]:
        """Get IDs of active recurrences whose next occurrence has passed."""
        async with self.db.session() as session:
            result = await session.execute(
                select(RecurringTaskDB.recurrence_id).where(
                    RecurringTaskDB.is_active == True,
                    RecurringTaskDB.next_occurrence.is_not(None),
                    RecurringTaskDB.next_occurrence <= now,
                ).order_by(RecurringTaskDB.next_occurrence)
            )
            return list(result.scalars().all())

    @_wrap_db_errors
    async def save(self, definition: RecurrenceDefinition) -> RecurrenceDefinition:
        """
        Persist user edits: schedule, timing, template and status.

        The instance ledger and counters are owned by record_firing and are
        left untouched here.
        """
        async with self.db.session() as session:
            row = await self._get_row(session, definition.recurrence_id, for_update=True)
            if row is None:
                raise RecurrenceNotFoundError(definition.recurrence_id)

            _apply_config(row, definition)
            await session.flush()

            logger.info(
                f"Saved recurrence {definition.recurrence_id} "
                f"(status={row.status}, next={row.next_occurrence})"
            )
            return _to_model(row)

    @_wrap_db_errors
    async def delete(self, recurrence_id: str) -> bool:
        """Hard-delete a recurrence and its history."""
        async with self.db.session() as session:
            result = await session.execute(
                delete(RecurringTaskDB).where(RecurringTaskDB.recurrence_id == recurrence_id)
            )
            deleted = result.rowcount > 0
            if deleted:
                logger.info(f"Deleted recurrence {recurrence_id}")
            return deleted

    # ==================== FIRING CLAIM ====================

    @_wrap_db_errors
    async def claim(
        self,
        recurrence_id: str,
        occurrence: datetime,
        token: str,
        now: datetime,
        lease_until: datetime,
    ) -> bool:
        """
        Atomically claim the right to fire one occurrence.

        The conditional update only matches while the row is active, still
        points at the same occurrence, and holds no unexpired claim.
        """
        async with self.db.session() as session:
            result = await session.execute(
                update(RecurringTaskDB)
                .where(
                    RecurringTaskDB.recurrence_id == recurrence_id,
                    RecurringTaskDB.is_active == True,
                    RecurringTaskDB.next_occurrence == occurrence,
                    or_(
                        RecurringTaskDB.claim_token.is_(None),
                        RecurringTaskDB.claim_expires_at < now,
                    ),
                )
                .values(
                    claim_token=token,
                    claim_occurrence=occurrence,
                    claim_expires_at=lease_until,
                )
                .execution_options(synchronize_session=False)
            )
            claimed = result.rowcount == 1
            if not claimed:
                logger.debug(f"Claim on {recurrence_id} @ {occurrence} not acquired")
            return claimed

    @_wrap_db_errors
    async def release_claim(self, recurrence_id: str, token: str) -> None:
        """Drop a claim without recording a firing."""
        async with self.db.session() as session:
            await session.execute(
                update(RecurringTaskDB)
                .where(
                    RecurringTaskDB.recurrence_id == recurrence_id,
                    RecurringTaskDB.claim_token == token,
                )
                .values(claim_token=None, claim_occurrence=None, claim_expires_at=None)
                .execution_options(synchronize_session=False)
            )

    @_wrap_db_errors
    async def record_firing(self, definition: RecurrenceDefinition, token: str) -> RecurrenceDefinition:
        """
        Persist a firing's lifecycle changes and release its claim in one write.

        Raises ConcurrentFiringError when the claim lease was lost. If the
        recurrence was paused or stopped while the firing was in flight, the
        ledger is recorded but the inactive status is kept.
        """
        async with self.db.session() as session:
            row = await self._get_row(session, definition.recurrence_id, for_update=True)
            if row is None:
                raise RecurrenceNotFoundError(definition.recurrence_id)

            if row.claim_token != token:
                raise ConcurrentFiringError(
                    f"Claim on {definition.recurrence_id} expired before the firing was recorded"
                )

            row.generated_instance_ids = list(definition.generated_instance_ids)
            row.completed_occurrences = definition.completed_occurrences
            row.last_occurrence = definition.last_occurrence

            if row.is_active:
                _apply_status(row, definition)
            else:
                logger.info(
                    f"Recurrence {definition.recurrence_id} became {row.status} during firing; "
                    f"keeping it inactive"
                )

            row.claim_token = None
            row.claim_occurrence = None
            row.claim_expires_at = None
            await session.flush()

            logger.info(
                f"Recorded firing of {definition.recurrence_id}: "
                f"{row.completed_occurrences} occurrences, next run: {row.next_occurrence}"
            )
            return _to_model(row)


# Singleton
_recurrence_repo: Optional[RecurrenceRepository] = None


def get_recurrence_repository() -> RecurrenceRepository:
    """Get the recurrence repository singleton."""
    global _recurrence_repo
    if _recurrence_repo is None:
        _recurrence_repo = RecurrenceRepository()
    return _recurrence_repo
