"""
Pytest configuration and shared fixtures.

In-memory stand-ins for the recurrence store, the work-item store and the
side-effect queue, with the same atomicity guarantees as the database
implementations: claim() and record_firing() never yield to the event loop
between their check and their write.
"""

import asyncio
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import pytest
import pytz

from recurflow.models.recurrence import (
    RecurrenceDefinition,
    RecurrenceStatus,
)
from recurflow.scheduling.exceptions import (
    ConcurrentFiringError,
    InstanceCreationError,
    ParentNotFoundError,
    RecurrenceConflictError,
    RecurrenceNotFoundError,
)
from recurflow.services.recurrence_service import RecurrenceService
from recurflow.services.trigger_engine import TriggerEngine


def utc(*args) -> datetime:
    return pytz.UTC.localize(datetime(*args))


# ============================================================
# FAKE STORES
# ============================================================

class FakeRecurrenceStore:
    """Dict-backed recurrence store."""

    def __init__(self):
        self.rows: Dict[str, RecurrenceDefinition] = {}
        self.claims: Dict[str, Tuple[str, datetime, datetime]] = {}
        self.claim_attempts = 0

    def put(self, definition: RecurrenceDefinition) -> RecurrenceDefinition:
        self.rows[definition.recurrence_id] = definition.model_copy(deep=True)
        return definition

    def get(self, recurrence_id: str) -> RecurrenceDefinition:
        return self.rows[recurrence_id]

    async def create(self, definition):
        for row in self.rows.values():
            if row.parent_id == definition.parent_id and row.is_active:
                raise RecurrenceConflictError(f"Active recurrence exists for {definition.parent_id}")
        self.put(definition)
        return definition.model_copy(deep=True)

    async def load(self, recurrence_id):
        row = self.rows.get(recurrence_id)
        return row.model_copy(deep=True) if row else None

    async def find_active_by_parent(self, parent_id):
        for row in self.rows.values():
            if row.parent_id == parent_id and row.is_active:
                return row.model_copy(deep=True)
        return None

    async def find_by_instance(self, instance_id):
        for row in self.rows.values():
            if instance_id in row.generated_instance_ids:
                return row.model_copy(deep=True)
        return None

    async def list_for_workspace(self, workspace_id, include_inactive=False):
        return [
            row.model_copy(deep=True)
            for row in self.rows.values()
            if row.workspace_id == workspace_id and (include_inactive or row.is_active)
        ]

    async def find_due(self, now):
        due = [
            row for row in self.rows.values()
            if row.is_active and row.next_occurrence is not None and row.next_occurrence <= now
        ]
        return [row.recurrence_id for row in sorted(due, key=lambda r: r.next_occurrence)]

    async def save(self, definition):
        row = self.rows.get(definition.recurrence_id)
        if row is None:
            raise RecurrenceNotFoundError(definition.recurrence_id)
        updated = definition.model_copy(deep=True)
        # Ledger and counters belong to record_firing
        updated.generated_instance_ids = list(row.generated_instance_ids)
        updated.completed_occurrences = row.completed_occurrences
        updated.last_occurrence = row.last_occurrence
        self.rows[definition.recurrence_id] = updated
        return updated.model_copy(deep=True)

    async def delete(self, recurrence_id):
        self.claims.pop(recurrence_id, None)
        return self.rows.pop(recurrence_id, None) is not None

    async def claim(self, recurrence_id, occurrence, token, now, lease_until):
        self.claim_attempts += 1
        row = self.rows.get(recurrence_id)
        if row is None or not row.is_active or row.next_occurrence != occurrence:
            return False
        held = self.claims.get(recurrence_id)
        if held is not None and held[2] >= now:
            return False
        self.claims[recurrence_id] = (token, occurrence, lease_until)
        return True

    async def release_claim(self, recurrence_id, token):
        held = self.claims.get(recurrence_id)
        if held is not None and held[0] == token:
            del self.claims[recurrence_id]

    async def record_firing(self, definition, token):
        row = self.rows.get(definition.recurrence_id)
        if row is None:
            raise RecurrenceNotFoundError(definition.recurrence_id)
        held = self.claims.get(definition.recurrence_id)
        if held is None or held[0] != token:
            raise ConcurrentFiringError("claim lost")

        row.generated_instance_ids = list(definition.generated_instance_ids)
        row.completed_occurrences = definition.completed_occurrences
        row.last_occurrence = definition.last_occurrence
        if row.is_active:
            row.status = definition.status
            row.status_reason = definition.status_reason
            row.next_occurrence = definition.next_occurrence

        del self.claims[definition.recurrence_id]
        return row.model_copy(deep=True)


class FakeWorkItemStore:
    """Dict-backed work-item store."""

    def __init__(self):
        self.items: Dict[str, Dict[str, Any]] = {}
        self.create_calls = 0
        self.fail_with: Optional[Exception] = None
        self._callbacks = []
        self._counter = 0

    def add_parent(self, item_id="CARD-1", title="Weekly report", workspace_id="WS-1", **extra):
        self.items[item_id] = {
            "item_id": item_id,
            "parent_id": None,
            "workspace_id": workspace_id,
            "kind": "task",
            "title": title,
            "description": extra.get("description", ""),
            "status": "todo",
            "priority": extra.get("priority", "medium"),
            "assignees": extra.get("assignees", []),
            "tags": extra.get("tags", []),
            "recurrence_id": None,
            "scheduled_for": None,
        }
        return self.items[item_id]

    def instances(self, recurrence_id=None) -> List[Dict[str, Any]]:
        return [
            item for item in self.items.values()
            if item["recurrence_id"] and (recurrence_id is None or item["recurrence_id"] == recurrence_id)
        ]

    async def get_parent(self, parent_id):
        item = self.items.get(parent_id)
        return dict(item) if item else None

    async def delete_item(self, item_id):
        return self.items.pop(item_id, None) is not None

    async def create_instance(self, parent_id, fields, dates):
        self.create_calls += 1
        # Yield so concurrent firings interleave here
        await asyncio.sleep(0)

        if self.fail_with is not None:
            raise self.fail_with
        if parent_id not in self.items:
            raise ParentNotFoundError(parent_id, fields.get("recurrence_id"))

        for item in self.items.values():
            if (
                item["recurrence_id"] == fields["recurrence_id"]
                and item["scheduled_for"] == fields["scheduled_for"]
            ):
                return item["item_id"]

        self._counter += 1
        item_id = fields.get("instance_id") or f"TASK-{self._counter:03d}"
        self.items[item_id] = {
            **fields,
            "item_id": item_id,
            "parent_id": parent_id,
            "status": "todo",
            "due_at": dates.get("due_at"),
            "start_at": dates.get("start_at"),
        }
        return item_id

    def subscribe_completion(self, callback):
        self._callbacks.append(callback)

    async def mark_complete(self, item_id, completed_at=None):
        item = self.items.get(item_id)
        if item is None:
            return False
        item["status"] = "completed"
        item["completed_at"] = completed_at
        for callback in self._callbacks:
            await callback(item_id, item.get("recurrence_id"), completed_at)
        return True


class FakeSideEffects:
    """Records queued side effects instead of delivering them."""

    def __init__(self):
        self.events: List[Tuple[str, Dict[str, Any]]] = []
        self.activities: List[Dict[str, Any]] = []

    async def notify(self, topic, payload, **kwargs):
        self.events.append((topic, payload))
        return f"FX-{len(self.events)}"

    async def log_activity(self, entry, **kwargs):
        self.activities.append(entry)
        return f"FX-A{len(self.activities)}"

    def topics(self) -> List[str]:
        return [topic for topic, _ in self.events]

    def actions(self) -> List[str]:
        return [entry["action"] for entry in self.activities]


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture
def store():
    return FakeRecurrenceStore()


@pytest.fixture
def work_items():
    items = FakeWorkItemStore()
    items.add_parent()
    return items


@pytest.fixture
def side_effects():
    return FakeSideEffects()


@pytest.fixture
def engine(store, work_items, side_effects):
    engine = TriggerEngine(store=store, work_items=work_items, side_effects=side_effects)
    work_items.subscribe_completion(engine.handle_instance_completed)
    return engine


@pytest.fixture
def service(engine):
    return RecurrenceService(engine=engine, audit=object())


@pytest.fixture
def make_definition(store):
    """Build a definition and put it in the store."""
    def _make(**overrides) -> RecurrenceDefinition:
        data = {
            "parent_id": "CARD-1",
            "workspace_id": "WS-1",
            "schedule": {"shape": "daily"},
            "due_time": "09:00",
            "status": RecurrenceStatus.ACTIVE,
            "next_occurrence": utc(2026, 3, 2, 9, 0),
            "created_by": "alice",
        }
        data.update(overrides)
        definition = RecurrenceDefinition(**data)
        store.put(definition)
        return definition
    return _make
