"""
Trigger engine - fires recurrences and applies lifecycle overrides.

A firing loads the definition, claims its current occurrence, creates the
instance through the work-item store, advances the schedule and records the
result in one compare-and-swap on the claim. Notifications and activity
entries are queued only after the write succeeded.

Both the background sweep and manual triggers go through fire(); the claim
makes concurrent firings of one occurrence produce a single instance.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from pydantic import ValidationError

from config import settings
from ..models.recurrence import (
    DONE_STATUSES,
    FireOutcome,
    FireResult,
    FiringBehavior,
    NoOpReason,
    RecurrenceDefinition,
    RecurrenceStatus,
)
from ..scheduling.calculator import RecurrenceCalculator
from ..scheduling.end_conditions import should_end
from ..scheduling.exceptions import (
    ConcurrentFiringError,
    InstanceCreationError,
    InvalidScheduleError,
    ParentNotFoundError,
    RecurrenceError,
    RecurrenceNotFoundError,
    RecurrenceStateError,
)
from ..utils.datetime_utils import ensure_utc, utc_now
from .instance_generator import InstanceGenerator
from .notifier import (
    HIERARCHY_SUBTASK_CHANGED,
    RECURRENCE_STOPPED,
    RECURRENCE_TRIGGERED,
    RECURRENCE_UPDATED,
)

logger = logging.getLogger(__name__)

SCHEDULER_ACTOR = "scheduler"

# Changes to these move next_occurrence; template edits do not
TIMING_FIELDS = (
    "schedule",
    "firing_behavior",
    "end_condition",
    "due_time",
    "timezone",
    "skip_weekends",
    "start_at",
)

# Fields update_schedule accepts
SCHEDULE_FIELDS = TIMING_FIELDS + ("template",)

FINAL_STATUSES = (RecurrenceStatus.STOPPED, RecurrenceStatus.COMPLETED)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class TriggerEngine:
    """Fires recurrences and owns their lifecycle transitions."""

    def __init__(
        self,
        store=None,
        work_items=None,
        side_effects=None,
        generator: Optional[InstanceGenerator] = None,
        calculator=RecurrenceCalculator,
        claim_lease_seconds: Optional[int] = None,
    ):
        if store is None:
            from ..database.repositories import get_recurrence_repository
            store = get_recurrence_repository()
        if work_items is None:
            from ..database.repositories import get_work_item_repository
            work_items = get_work_item_repository()
        if side_effects is None:
            from .side_effects import get_side_effect_queue
            side_effects = get_side_effect_queue()

        self.store = store
        self.work_items = work_items
        self.side_effects = side_effects
        self.generator = generator or InstanceGenerator()
        self.calculator = calculator
        self.claim_lease_seconds = claim_lease_seconds or settings.claim_lease_seconds

    # ==================== FIRING ====================

    async def fire(
        self,
        recurrence_id: str,
        now: Optional[datetime] = None,
        manual: bool = False,
        triggered_by: Optional[str] = None,
    ) -> FireResult:
        """
        Fire the current occurrence of a recurrence.

        The sweep passes manual=False and only fires occurrences that are
        due; manual triggers fire the pending occurrence right away.

        Raises:
            RecurrenceNotFoundError: Unknown recurrence
            ParentNotFoundError: Parent is gone, the recurrence was auto-paused
            InstanceCreationError: Work-item store failed, claim released
            PersistenceError: Store failure, the claim lease will expire
        """
        now = ensure_utc(now) if now else utc_now()

        definition = await self.store.load(recurrence_id)
        if definition is None:
            raise RecurrenceNotFoundError(recurrence_id)

        if not definition.is_active:
            return FireResult.noop(recurrence_id, NoOpReason.INACTIVE)

        occurrence = definition.next_occurrence
        if occurrence is None:
            return FireResult.noop(recurrence_id, NoOpReason.AWAITING_COMPLETION)

        if not manual and occurrence > now:
            return FireResult.noop(recurrence_id, NoOpReason.NOT_DUE)

        token = uuid.uuid4().hex
        lease_until = now + timedelta(seconds=self.claim_lease_seconds)
        if not await self.store.claim(recurrence_id, occurrence, token, now, lease_until):
            logger.info(f"Occurrence {occurrence} of {recurrence_id} already claimed")
            return FireResult.noop(recurrence_id, NoOpReason.ALREADY_CLAIMED)

        try:
            instance = await self._create_instance(definition, occurrence, now)
        except ParentNotFoundError:
            await self._handle_parent_missing(definition, token)
            raise
        except RecurrenceError:
            await self._release(recurrence_id, token)
            raise
        except Exception as e:
            await self._release(recurrence_id, token)
            raise InstanceCreationError(f"Instance creation failed for {recurrence_id}: {e}") from e

        try:
            self._advance(definition, occurrence, instance.instance_id, now)
        except Exception:
            # Instance exists; a retry reuses it through the occurrence dedupe
            await self._release(recurrence_id, token)
            raise

        try:
            persisted = await self.store.record_firing(definition, token)
        except ConcurrentFiringError as e:
            logger.warning(f"Firing of {recurrence_id} lost its claim: {e}")
            return FireResult.noop(recurrence_id, NoOpReason.ALREADY_CLAIMED)

        logger.info(
            f"Fired {recurrence_id} for {occurrence} -> {instance.instance_id} "
            f"({'manual' if manual else 'sweep'}); next: {persisted.next_occurrence}"
        )

        await self._emit_fired(persisted, instance, manual, triggered_by)

        if persisted.awaiting_completion:
            persisted = await self._catch_up_completion(persisted, instance.instance_id)

        return FireResult(
            outcome=FireOutcome.FIRED,
            recurrence_id=recurrence_id,
            instance=instance,
            definition=persisted,
        )

    async def _create_instance(self, definition: RecurrenceDefinition, occurrence: datetime, now: datetime):
        parent = await self.work_items.get_parent(definition.parent_id)
        if parent is None:
            raise ParentNotFoundError(definition.parent_id, definition.recurrence_id)

        instance = self.generator.build(definition, parent, occurrence, now)
        fields, dates = self.generator.store_arguments(instance, definition.created_by)
        instance_id = await self.work_items.create_instance(definition.parent_id, fields, dates)

        # The store hands back the existing ID when this occurrence was already created
        if instance_id != instance.instance_id:
            instance = instance.model_copy(update={"instance_id": instance_id})
        return instance

    def _advance(
        self,
        definition: RecurrenceDefinition,
        occurrence: datetime,
        instance_id: str,
        now: datetime,
    ) -> None:
        """Apply one firing to the definition's ledger and schedule."""
        if instance_id not in definition.generated_instance_ids:
            definition.generated_instance_ids.append(instance_id)
            definition.completed_occurrences += 1
        definition.last_occurrence = now

        if definition.firing_behavior == FiringBehavior.AFTER_COMPLETION:
            definition.next_occurrence = None
            exhausted = False
        else:
            definition.next_occurrence = self._next(definition, max(now, occurrence))
            exhausted = definition.next_occurrence is None

        if exhausted:
            definition.deactivate(RecurrenceStatus.COMPLETED, "No further dates in custom schedule")
        elif should_end(definition, fired_at=now):
            definition.deactivate(RecurrenceStatus.COMPLETED, "End condition reached")

    def _next(self, definition: RecurrenceDefinition, reference: datetime) -> Optional[datetime]:
        return self.calculator.next_occurrence(
            definition.schedule,
            reference,
            timezone=definition.timezone,
            due_time=definition.due_time,
            skip_weekends=definition.skip_weekends,
        )

    def _first(self, definition: RecurrenceDefinition, start: datetime) -> Optional[datetime]:
        return self.calculator.first_occurrence(
            definition.schedule,
            start,
            timezone=definition.timezone,
            due_time=definition.due_time,
            skip_weekends=definition.skip_weekends,
        )

    async def _release(self, recurrence_id: str, token: str) -> None:
        try:
            await self.store.release_claim(recurrence_id, token)
        except RecurrenceError as e:
            # Claim lease expires on its own
            logger.error(f"Could not release claim on {recurrence_id}: {e}")

    async def _handle_parent_missing(self, definition: RecurrenceDefinition, token: str) -> None:
        logger.warning(
            f"Parent {definition.parent_id} of {definition.recurrence_id} not found, pausing"
        )
        definition.deactivate(RecurrenceStatus.PARENT_MISSING, "Parent work item not found")
        try:
            await self.store.save(definition)
        finally:
            await self._release(definition.recurrence_id, token)

        await self.emit(
            RECURRENCE_UPDATED,
            self.event_payload(definition),
            activity={
                "action": "recurrence_parent_missing",
                "changed_by": SCHEDULER_ACTOR,
                "description": f"Paused: parent {definition.parent_id} not found",
                "source": "scheduler",
            },
            definition=definition,
        )

    # ==================== COMPLETION ====================

    async def handle_instance_completed(
        self,
        instance_id: str,
        recurrence_id: Optional[str] = None,
        completed_at: Optional[datetime] = None,
    ) -> Optional[RecurrenceDefinition]:
        """
        Schedule the next occurrence of an after-completion recurrence.

        Subscribed to the work-item store's completion event. Only the
        latest generated instance moves the schedule forward.
        """
        completed_at = ensure_utc(completed_at) if completed_at else utc_now()

        if recurrence_id:
            definition = await self.store.load(recurrence_id)
        else:
            definition = await self.store.find_by_instance(instance_id)

        if definition is None or definition.firing_behavior != FiringBehavior.AFTER_COMPLETION:
            return None
        if not definition.awaiting_completion:
            logger.debug(f"{definition.recurrence_id} not waiting on a completion, ignoring {instance_id}")
            return None
        if definition.latest_instance_id != instance_id:
            logger.debug(f"{instance_id} is not the latest instance of {definition.recurrence_id}")
            return None

        definition.next_occurrence = self._next(definition, completed_at)
        if definition.next_occurrence is None:
            definition.deactivate(RecurrenceStatus.COMPLETED, "No further dates in custom schedule")
        elif should_end(definition, fired_at=completed_at):
            definition.deactivate(RecurrenceStatus.COMPLETED, "End condition reached")

        saved = await self.store.save(definition)
        logger.info(
            f"Instance {instance_id} completed, {saved.recurrence_id} next: {saved.next_occurrence}"
        )

        if saved.status == RecurrenceStatus.COMPLETED:
            await self.emit(
                RECURRENCE_STOPPED,
                self.event_payload(saved, reason="completed"),
                activity={
                    "action": "recurrence_completed",
                    "changed_by": SCHEDULER_ACTOR,
                    "description": saved.status_reason,
                    "source": "scheduler",
                },
                definition=saved,
            )
        return saved

    async def _catch_up_completion(self, definition: RecurrenceDefinition, instance_id: str) -> RecurrenceDefinition:
        """
        Apply a completion that landed before the firing was recorded.

        The completion event is ignored while the ledger does not list the
        instance yet, so the instance is re-read once the firing is stored.
        """
        try:
            item = await self.work_items.get_parent(instance_id)
            if item is None or item.get("status") not in DONE_STATUSES:
                return definition

            logger.info(f"Instance {instance_id} was completed while {definition.recurrence_id} fired")
            saved = await self.handle_instance_completed(
                instance_id, definition.recurrence_id, item.get("completed_at")
            )
        except RecurrenceError as e:
            logger.error(f"Could not check completion of {instance_id}: {e}")
            return definition

        return saved or definition

    # ==================== MANUAL OVERRIDES ====================

    async def _load(self, recurrence_id: str) -> RecurrenceDefinition:
        definition = await self.store.load(recurrence_id)
        if definition is None:
            raise RecurrenceNotFoundError(recurrence_id)
        return definition

    async def pause(
        self,
        recurrence_id: str,
        changed_by: str = "system",
        reason: Optional[str] = None,
    ) -> RecurrenceDefinition:
        """Pause future firings; an in-flight firing still completes."""
        definition = await self._load(recurrence_id)

        if definition.status in FINAL_STATUSES:
            raise RecurrenceStateError(f"Cannot pause a {definition.status_label} recurrence")
        if definition.status == RecurrenceStatus.PAUSED:
            return definition

        definition.deactivate(RecurrenceStatus.PAUSED, reason)
        saved = await self.store.save(definition)

        await self.emit(
            RECURRENCE_UPDATED,
            self.event_payload(saved),
            activity={
                "action": "recurrence_paused",
                "changed_by": changed_by,
                "description": reason or "Paused",
            },
            definition=saved,
        )
        return saved

    async def resume(
        self,
        recurrence_id: str,
        changed_by: str = "system",
        now: Optional[datetime] = None,
    ) -> RecurrenceDefinition:
        """
        Reactivate a paused recurrence and recompute its next occurrence.

        Raises:
            RecurrenceStateError: Recurrence was stopped or completed
            ParentNotFoundError: Parent still does not exist
        """
        now = ensure_utc(now) if now else utc_now()
        definition = await self._load(recurrence_id)

        if definition.status in FINAL_STATUSES:
            raise RecurrenceStateError(f"Cannot resume a {definition.status_label} recurrence")
        if definition.is_active:
            return definition

        if await self.work_items.get_parent(definition.parent_id) is None:
            raise ParentNotFoundError(definition.parent_id, recurrence_id)

        definition.status = RecurrenceStatus.ACTIVE
        definition.status_reason = None
        await self._reschedule(definition, now, max(now, definition.start_at or now))

        saved = await self.store.save(definition)
        await self.emit(
            RECURRENCE_UPDATED,
            self.event_payload(saved),
            activity={
                "action": "recurrence_resumed",
                "changed_by": changed_by,
                "description": f"Resumed, next occurrence {_iso(saved.next_occurrence)}",
            },
            definition=saved,
        )
        return saved

    async def hard_stop(
        self,
        recurrence_id: str,
        changed_by: str = "system",
        reason: Optional[str] = None,
    ) -> RecurrenceDefinition:
        """Stop a recurrence for good."""
        definition = await self._load(recurrence_id)
        if definition.status == RecurrenceStatus.STOPPED:
            return definition

        definition.deactivate(RecurrenceStatus.STOPPED, reason or f"Stopped by {changed_by}")
        saved = await self.store.save(definition)

        await self.emit(
            RECURRENCE_STOPPED,
            self.event_payload(saved, reason="stopped"),
            activity={
                "action": "recurrence_stopped",
                "changed_by": changed_by,
                "description": saved.status_reason,
            },
            definition=saved,
        )
        return saved

    async def update_schedule(
        self,
        recurrence_id: str,
        changes: Dict[str, Any],
        changed_by: str = "system",
        now: Optional[datetime] = None,
    ) -> RecurrenceDefinition:
        """
        Replace schedule, timing, end condition or template and recompute.

        Raises:
            InvalidScheduleError: Invalid options, or the recomputed next
                occurrence would lie in the past
            RecurrenceStateError: Recurrence was stopped or completed
        """
        now = ensure_utc(now) if now else utc_now()
        definition = await self._load(recurrence_id)

        if definition.status in FINAL_STATUSES:
            raise RecurrenceStateError(f"Cannot update a {definition.status_label} recurrence")

        unknown = set(changes) - set(SCHEDULE_FIELDS)
        if unknown:
            raise InvalidScheduleError(f"Unknown fields: {', '.join(sorted(unknown))}")

        updated = self._apply_changes(definition, changes)
        self.calculator.validate(
            updated.schedule,
            updated.firing_behavior,
            timezone=updated.timezone,
            due_time=updated.due_time,
        )

        if updated.is_active and any(field in changes for field in TIMING_FIELDS):
            anchor = updated.start_at if "start_at" in changes and updated.start_at else now
            await self._reschedule(updated, now, anchor)
            if updated.next_occurrence is not None and updated.next_occurrence < now:
                raise InvalidScheduleError(
                    f"Next occurrence {updated.next_occurrence.isoformat()} would be in the past"
                )

        updated.updated_at = now
        saved = await self.store.save(updated)

        await self.emit(
            RECURRENCE_UPDATED,
            self.event_payload(saved),
            activity={
                "action": "recurrence_updated",
                "changed_by": changed_by,
                "description": f"Updated {', '.join(sorted(changes))}",
                "details": {"fields": sorted(changes)},
            },
            definition=saved,
        )
        return saved

    def _apply_changes(self, definition: RecurrenceDefinition, changes: Dict[str, Any]) -> RecurrenceDefinition:
        data = definition.model_dump()
        for key, value in changes.items():
            if key == "schedule":
                value = self.calculator.parse_schedule(value)
            elif key == "end_condition":
                value = self.calculator.parse_end_condition(value)
            elif key == "template" and isinstance(value, dict):
                value = {**data["template"], **value}
            data[key] = value
        try:
            return RecurrenceDefinition.model_validate(data)
        except ValidationError as e:
            raise InvalidScheduleError(f"Invalid recurrence update: {e}") from e

    async def _reschedule(self, definition: RecurrenceDefinition, now: datetime, anchor: datetime) -> None:
        """
        Recompute next_occurrence for an active definition.

        After-completion recurrences keep waiting on an open latest instance.
        Once it is done, the wait counts from its completion time, and falls
        back to the anchor only when that wait has already elapsed.
        """
        candidate = None
        if definition.firing_behavior == FiringBehavior.AFTER_COMPLETION:
            latest = definition.latest_instance_id
            item = await self.work_items.get_parent(latest) if latest else None
            if item is not None:
                if item.get("status") not in DONE_STATUSES:
                    definition.next_occurrence = None
                    return
                if item.get("completed_at"):
                    candidate = self._next(definition, ensure_utc(item["completed_at"]))

        if candidate is None or candidate < anchor:
            candidate = self._first(definition, anchor)

        definition.next_occurrence = candidate
        if definition.next_occurrence is None:
            definition.deactivate(RecurrenceStatus.COMPLETED, "No further dates in custom schedule")
        elif should_end(definition, fired_at=now):
            definition.deactivate(RecurrenceStatus.COMPLETED, "End condition reached")

    # ==================== SIDE EFFECTS ====================

    def event_payload(self, definition: RecurrenceDefinition, **extra) -> Dict[str, Any]:
        payload = {
            "recurrence_id": definition.recurrence_id,
            "parent_id": definition.parent_id,
            "workspace_id": definition.workspace_id,
            "status": definition.status.value,
            "status_label": definition.status_label,
            "next_occurrence": _iso(definition.next_occurrence),
            "completed_occurrences": definition.completed_occurrences,
        }
        payload.update(extra)
        return payload

    async def emit(
        self,
        topic: str,
        payload: Dict[str, Any],
        activity: Optional[Dict[str, Any]] = None,
        definition: Optional[RecurrenceDefinition] = None,
    ) -> None:
        """Queue a notification and an activity entry; never raises."""
        try:
            await self.side_effects.notify(topic, payload)
            if activity is not None:
                entry = {"entity_type": "recurrence", "source": "api", **activity}
                if definition is not None:
                    entry.setdefault("entity_id", definition.recurrence_id)
                    entry.setdefault("workspace_id", definition.workspace_id)
                    entry.setdefault("parent_id", definition.parent_id)
                await self.side_effects.log_activity(entry)
        except Exception as e:
            logger.error(f"Could not queue side effects for {topic}: {e}", exc_info=True)

    async def _emit_fired(self, definition: RecurrenceDefinition, instance, manual: bool, triggered_by: Optional[str]) -> None:
        actor = triggered_by or (definition.created_by if manual else SCHEDULER_ACTOR) or SCHEDULER_ACTOR
        source = "api" if manual else "scheduler"

        await self.emit(
            RECURRENCE_TRIGGERED,
            self.event_payload(
                definition,
                instance_id=instance.instance_id,
                scheduled_for=_iso(instance.scheduled_for),
                manual=manual,
            ),
            activity={
                "action": "recurrence_triggered",
                "changed_by": actor,
                "source": source,
                "description": f"Generated {instance.kind.value} {instance.instance_id}: {instance.title}",
                "details": {
                    "instance_id": instance.instance_id,
                    "scheduled_for": _iso(instance.scheduled_for),
                    "due_at": _iso(instance.due_at),
                },
            },
            definition=definition,
        )
        await self.emit(
            HIERARCHY_SUBTASK_CHANGED,
            {
                "parent_id": definition.parent_id,
                "workspace_id": definition.workspace_id,
                "instance_id": instance.instance_id,
                "kind": instance.kind.value,
                "action": "created",
            },
        )

        if definition.status == RecurrenceStatus.COMPLETED:
            await self.emit(
                RECURRENCE_STOPPED,
                self.event_payload(definition, reason="completed"),
                activity={
                    "action": "recurrence_completed",
                    "changed_by": SCHEDULER_ACTOR,
                    "source": source,
                    "description": definition.status_reason,
                },
                definition=definition,
            )


# Singleton
_trigger_engine: Optional[TriggerEngine] = None


def get_trigger_engine() -> TriggerEngine:
    """Get the trigger engine singleton."""
    global _trigger_engine
    if _trigger_engine is None:
        _trigger_engine = TriggerEngine()
    return _trigger_engine
