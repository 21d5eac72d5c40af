"""Builds the work item produced by one firing of a recurrence."""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple

from ..models.recurrence import (
    GeneratedInstance,
    InstanceKind,
    RecurrenceDefinition,
)
from ..utils.datetime_utils import ensure_utc, utc_now

logger = logging.getLogger(__name__)


def _new_instance_id() -> str:
    return f"TASK-{datetime.now().strftime('%Y%m%d')}-{uuid.uuid4().hex[:6].upper()}"


class InstanceGenerator:
    """Turns a definition's template plus an occurrence into an instance."""

    def build(
        self,
        definition: RecurrenceDefinition,
        parent: Dict[str, Any],
        occurrence: datetime,
        now: Optional[datetime] = None,
    ) -> GeneratedInstance:
        """
        Build the instance for `occurrence`.

        Dates are anchored to the occurrence being fired, not to the firing
        time, so a late sweep still produces the scheduled due date.
        """
        template = definition.template
        occurrence = ensure_utc(occurrence)

        due_at = occurrence + timedelta(days=template.due_offset_days)
        start_at = None
        if template.start_offset_days is not None:
            start_at = due_at - timedelta(days=template.start_offset_days)

        parent_title = parent.get("title") or "Task"

        return GeneratedInstance(
            instance_id=_new_instance_id(),
            parent_id=definition.parent_id,
            workspace_id=definition.workspace_id,
            recurrence_id=definition.recurrence_id,
            scheduled_for=occurrence,
            kind=InstanceKind.TASK if template.create_as_task else InstanceKind.SUBTASK,
            title=template.title or f"{parent_title} - Recurring Instance",
            description=template.description or "",
            priority=template.priority or "medium",
            assignees=list(template.assignees),
            tags=list(template.tags),
            due_at=due_at,
            start_at=start_at,
            created_at=now or utc_now(),
        )

    @staticmethod
    def store_arguments(
        instance: GeneratedInstance,
        created_by: Optional[str] = None,
    ) -> Tuple[Dict[str, Any], Dict[str, Optional[datetime]]]:
        """Split an instance into the (fields, dates) the work-item store takes."""
        fields = {
            "instance_id": instance.instance_id,
            "recurrence_id": instance.recurrence_id,
            "scheduled_for": instance.scheduled_for,
            "workspace_id": instance.workspace_id,
            "kind": instance.kind.value,
            "title": instance.title,
            "description": instance.description,
            "priority": instance.priority,
            "assignees": instance.assignees,
            "tags": instance.tags,
            "created_by": created_by or "recurrence",
        }
        dates = {"due_at": instance.due_at, "start_at": instance.start_at}
        return fields, dates
