"""
Recurrence service - administrative operations on recurrences.

Creating, inspecting, updating, pausing, resuming, stopping and manually
triggering recurrences. Lifecycle transitions are delegated to the trigger
engine so manual and scheduled changes follow the same rules.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from config import settings
from ..models.recurrence import (
    CustomSchedule,
    DaysAfterCompletionSchedule,
    FireResult,
    FiringBehavior,
    MonthlyMode,
    MonthlySchedule,
    RecurrenceDefinition,
)
from ..scheduling.calculator import RecurrenceCalculator
from ..scheduling.end_conditions import should_end
from ..scheduling.exceptions import (
    InvalidScheduleError,
    ParentNotFoundError,
    RecurrenceConflictError,
    RecurrenceError,
    RecurrenceNotFoundError,
)
from ..utils.datetime_utils import ensure_utc, to_local_date, utc_now
from .notifier import RECURRENCE_CREATED, RECURRENCE_STOPPED
from .trigger_engine import TriggerEngine, get_trigger_engine

logger = logging.getLogger(__name__)


def default_template(parent: Dict[str, Any]) -> Dict[str, Any]:
    """Instance template derived from the parent work item."""
    title = parent.get("title")
    return {
        "title": f"{title} - Recurring" if title else "Recurring Task",
        "description": parent.get("description") or "",
        "priority": parent.get("priority") or "medium",
        "assignees": list(parent.get("assignees") or []),
        "tags": list(parent.get("tags") or []),
    }


class RecurrenceService:
    """Administrative surface for recurrences."""

    def __init__(
        self,
        engine: Optional[TriggerEngine] = None,
        audit=None,
        calculator=RecurrenceCalculator,
    ):
        self.engine = engine or get_trigger_engine()
        self.store = self.engine.store
        self.work_items = self.engine.work_items
        self._audit = audit
        self.calculator = calculator

    @property
    def audit(self):
        if self._audit is None:
            from ..database.repositories import get_audit_repository
            self._audit = get_audit_repository()
        return self._audit

    # ==================== CREATE ====================

    async def create_recurrence(
        self,
        data: Dict[str, Any],
        created_by: Optional[str] = None,
        fire_immediately: bool = False,
        now: Optional[datetime] = None,
    ) -> RecurrenceDefinition:
        """
        Attach a recurrence to a parent work item.

        data keys: parent_id (required), schedule (required), workspace_id,
        firing_behavior, end_condition, due_time, timezone, start_at,
        skip_weekends, template.

        Raises:
            ParentNotFoundError: Parent does not exist
            RecurrenceConflictError: Parent already has an active recurrence
            InvalidScheduleError: Invalid or inconsistent schedule
        """
        now = ensure_utc(now) if now else utc_now()

        parent_id = data.get("parent_id")
        if not parent_id:
            raise InvalidScheduleError("parent_id is required")
        if "schedule" not in data:
            raise InvalidScheduleError("schedule is required")

        parent = await self.work_items.get_parent(parent_id)
        if parent is None:
            raise ParentNotFoundError(parent_id)

        existing = await self.store.find_active_by_parent(parent_id)
        if existing is not None:
            raise RecurrenceConflictError(
                f"Active recurrence {existing.recurrence_id} already exists for {parent_id}"
            )

        definition = self._build_definition(data, parent, created_by, now)
        self.calculator.validate(
            definition.schedule,
            definition.firing_behavior,
            timezone=definition.timezone,
            due_time=definition.due_time,
        )

        definition.next_occurrence = self.calculator.first_occurrence(
            definition.schedule,
            definition.start_at,
            timezone=definition.timezone,
            due_time=definition.due_time,
            skip_weekends=definition.skip_weekends,
        )
        if definition.next_occurrence is None:
            raise InvalidScheduleError("Schedule has no occurrences after the start date")
        if should_end(definition, fired_at=now):
            raise InvalidScheduleError("End condition is reached before the first occurrence")

        created = await self.store.create(definition)
        logger.info(
            f"Created recurrence {created.recurrence_id} ({created.schedule.shape}) "
            f"on {parent_id}, first occurrence {created.next_occurrence}"
        )

        await self.engine.emit(
            RECURRENCE_CREATED,
            self.engine.event_payload(created, schedule=created.schedule.model_dump(mode="json")),
            activity={
                "action": "recurrence_created",
                "changed_by": created_by or "system",
                "description": f"Set up recurring schedule: {created.schedule.shape}",
                "details": {
                    "shape": created.schedule.shape,
                    "firing_behavior": created.firing_behavior.value,
                },
            },
            definition=created,
        )

        if fire_immediately:
            try:
                result = await self.engine.fire(
                    created.recurrence_id, now=now, manual=True, triggered_by=created_by
                )
                if result.definition is not None:
                    return result.definition
            except RecurrenceError as e:
                # The recurrence stands; the sweep picks the occurrence up later
                logger.error(f"Error creating first instance of {created.recurrence_id}: {e}")

        return created

    def _build_definition(
        self,
        data: Dict[str, Any],
        parent: Dict[str, Any],
        created_by: Optional[str],
        now: datetime,
    ) -> RecurrenceDefinition:
        schedule = self.calculator.parse_schedule(data["schedule"])
        timezone = data.get("timezone") or settings.timezone

        firing_behavior = data.get("firing_behavior")
        if firing_behavior is None:
            firing_behavior = (
                FiringBehavior.AFTER_COMPLETION
                if isinstance(schedule, DaysAfterCompletionSchedule)
                else FiringBehavior.ON_SCHEDULE
            )

        try:
            definition = RecurrenceDefinition(
                parent_id=parent["item_id"],
                workspace_id=data.get("workspace_id") or parent["workspace_id"],
                schedule=schedule,
                firing_behavior=firing_behavior,
                end_condition=self.calculator.parse_end_condition(data.get("end_condition")),
                due_time=data.get("due_time") or settings.default_due_time,
                start_at=data.get("start_at") or now,
                timezone=timezone,
                skip_weekends=bool(data.get("skip_weekends", False)),
                template=data.get("template") or default_template(parent),
                created_by=created_by,
                created_at=now,
                updated_at=now,
            )
        except ValidationError as e:
            raise InvalidScheduleError(f"Invalid recurrence: {e}") from e

        start_date = to_local_date(definition.start_at, self.calculator.get_timezone(timezone))
        schedule = definition.schedule

        # Monthly by date without a day repeats on the start date's day
        if (
            isinstance(schedule, MonthlySchedule)
            and schedule.mode == MonthlyMode.DAY_OF_MONTH
            and schedule.day_of_month is None
        ):
            definition.schedule = schedule.model_copy(update={"day_of_month": start_date.day})

        # Anchor rules to the start so COUNT/INTERVAL are counted from there
        if isinstance(schedule, CustomSchedule) and schedule.rule and schedule.rule_start is None:
            definition.schedule = schedule.model_copy(update={"rule_start": start_date})

        return definition

    # ==================== READ ====================

    async def get_recurrence(self, recurrence_id: str) -> RecurrenceDefinition:
        definition = await self.store.load(recurrence_id)
        if definition is None:
            raise RecurrenceNotFoundError(recurrence_id)
        return definition

    async def get_recurrence_by_parent(self, parent_id: str) -> Optional[RecurrenceDefinition]:
        return await self.store.find_active_by_parent(parent_id)

    async def list_recurrences(
        self,
        workspace_id: str,
        include_inactive: bool = False,
    ) -> List[RecurrenceDefinition]:
        return await self.store.list_for_workspace(workspace_id, include_inactive=include_inactive)

    async def get_recurrence_history(self, recurrence_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        """Activity trail of a recurrence, newest first."""
        entries = await self.audit.get_entity_history(recurrence_id, limit=limit)
        return [
            {
                "action": entry.action,
                "description": entry.description,
                "changed_by": entry.changed_by,
                "source": entry.source,
                "timestamp": entry.timestamp.isoformat() if entry.timestamp else None,
                "details": entry.details,
            }
            for entry in entries
        ]

    # ==================== UPDATE / LIFECYCLE ====================

    async def update_recurrence(
        self,
        recurrence_id: str,
        changes: Dict[str, Any],
        changed_by: str = "system",
        now: Optional[datetime] = None,
    ) -> RecurrenceDefinition:
        return await self.engine.update_schedule(recurrence_id, changes, changed_by=changed_by, now=now)

    async def pause_recurrence(
        self,
        recurrence_id: str,
        changed_by: str = "system",
        reason: Optional[str] = None,
    ) -> RecurrenceDefinition:
        return await self.engine.pause(recurrence_id, changed_by=changed_by, reason=reason)

    async def resume_recurrence(
        self,
        recurrence_id: str,
        changed_by: str = "system",
        now: Optional[datetime] = None,
    ) -> RecurrenceDefinition:
        return await self.engine.resume(recurrence_id, changed_by=changed_by, now=now)

    async def stop_recurrence(
        self,
        recurrence_id: str,
        changed_by: str = "system",
        hard_delete: bool = False,
    ) -> Optional[RecurrenceDefinition]:
        """
        Stop a recurrence.

        A soft stop keeps the definition as `stopped`. A hard delete removes
        it; generated instances are never touched.
        """
        if not hard_delete:
            return await self.engine.hard_stop(recurrence_id, changed_by=changed_by)

        definition = await self.get_recurrence(recurrence_id)
        await self.store.delete(recurrence_id)
        logger.info(f"Hard-deleted recurrence {recurrence_id}")

        await self.engine.emit(
            RECURRENCE_STOPPED,
            {
                "recurrence_id": recurrence_id,
                "parent_id": definition.parent_id,
                "workspace_id": definition.workspace_id,
                "reason": "deleted",
            },
            activity={
                "action": "recurrence_deleted",
                "changed_by": changed_by,
                "description": "Deleted recurring schedule",
            },
            definition=definition,
        )
        return None

    async def trigger_recurrence(
        self,
        recurrence_id: str,
        triggered_by: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> FireResult:
        """Fire the pending occurrence now, regardless of its scheduled time."""
        return await self.engine.fire(recurrence_id, now=now, manual=True, triggered_by=triggered_by)


# Singleton
_recurrence_service: Optional[RecurrenceService] = None


def get_recurrence_service() -> RecurrenceService:
    """Get the recurrence service singleton."""
    global _recurrence_service
    if _recurrence_service is None:
        _recurrence_service = RecurrenceService()
    return _recurrence_service
