"""
Unit tests for the background sweep.

Tests for SchedulerManager including:
- Firing every due recurrence in one pass
- Isolation of failing and slow firings
- Job registration and control
"""
import asyncio

import pytest
from unittest.mock import AsyncMock, Mock, patch

from recurflow.models.recurrence import RecurrenceStatus
from recurflow.scheduler.jobs import SIDE_EFFECT_JOB_ID, SWEEP_JOB_ID, SchedulerManager
from recurflow.scheduling.exceptions import InstanceCreationError
from tests.conftest import utc


@pytest.fixture
def scheduler_manager(engine):
    """Scheduler manager wired to the in-memory engine."""
    return SchedulerManager(
        engine=engine,
        side_effects=AsyncMock(),
        concurrency=4,
        firing_timeout_seconds=0.5,
    )


# ===========================
# Sweep Tests
# ===========================

@pytest.mark.asyncio
async def test_sweep_fires_due_recurrences(scheduler_manager, work_items, make_definition):
    """Every recurrence due at the sweep time fires once."""
    work_items.add_parent("CARD-2", title="Standup notes")
    first = make_definition()
    second = make_definition(parent_id="CARD-2", next_occurrence=utc(2026, 3, 2, 8, 0))
    make_definition(parent_id="CARD-3", next_occurrence=utc(2026, 3, 3, 9, 0))

    report = await scheduler_manager.run_sweep(now=utc(2026, 3, 2, 9, 0))

    assert report.due == 2
    assert sorted(report.fired) == sorted([first.recurrence_id, second.recurrence_id])
    assert report.errors == {}
    assert len(work_items.instances()) == 2
    assert scheduler_manager.last_report is report


@pytest.mark.asyncio
async def test_sweep_nothing_due(scheduler_manager, make_definition):
    """A quiet pass reports nothing and fires nothing."""
    make_definition(next_occurrence=utc(2026, 3, 3, 9, 0))

    report = await scheduler_manager.run_sweep(now=utc(2026, 3, 2, 9, 0))

    assert report.due == 0
    assert report.fired == []
    assert report.finished_at is not None


@pytest.mark.asyncio
async def test_sweep_skips_paused_recurrences(scheduler_manager, work_items, make_definition):
    """Paused recurrences are never picked up."""
    make_definition(status=RecurrenceStatus.PAUSED, next_occurrence=None)

    report = await scheduler_manager.run_sweep(now=utc(2026, 3, 2, 9, 0))

    assert report.due == 0
    assert work_items.instances() == []


@pytest.mark.asyncio
async def test_sweep_isolates_failures(scheduler_manager, work_items, make_definition):
    """One failing recurrence does not stop the others from firing."""
    healthy = make_definition()
    orphan = make_definition(parent_id="CARD-GONE")

    report = await scheduler_manager.run_sweep(now=utc(2026, 3, 2, 9, 0))

    assert report.fired == [healthy.recurrence_id]
    assert orphan.recurrence_id in report.errors
    assert "ParentNotFoundError" in report.errors[orphan.recurrence_id]
    assert report.error_count == 1


@pytest.mark.asyncio
async def test_sweep_times_out_slow_firing(engine, store, work_items, make_definition):
    """A firing that exceeds the timeout is recorded and the pass completes."""
    manager = SchedulerManager(engine=engine, side_effects=AsyncMock(), firing_timeout_seconds=0.05)
    definition = make_definition()

    async def slow_create(parent_id, fields, dates):
        await asyncio.sleep(5)

    work_items.create_instance = slow_create

    report = await manager.run_sweep(now=utc(2026, 3, 2, 9, 0))

    assert report.errors == {definition.recurrence_id: "timeout"}
    assert store.get(definition.recurrence_id).completed_occurrences == 0


@pytest.mark.asyncio
async def test_sweep_records_noops(scheduler_manager, engine, make_definition):
    """Firings that turn out to be no-ops are reported with their reason."""
    definition = make_definition()
    engine.fire = AsyncMock(return_value=Mock(fired=False, reason=Mock(value="already_claimed")))

    report = await scheduler_manager.run_sweep(now=utc(2026, 3, 2, 9, 0))

    assert report.noops == {definition.recurrence_id: "already_claimed"}
    engine.fire.assert_awaited_once_with(definition.recurrence_id, now=utc(2026, 3, 2, 9, 0), manual=False)


@pytest.mark.asyncio
async def test_sweep_job_survives_store_errors(scheduler_manager, store):
    """The scheduled job logs store failures instead of raising."""
    store.find_due = AsyncMock(side_effect=InstanceCreationError("database unreachable"))

    await scheduler_manager._sweep_job()

    store.find_due.assert_awaited_once()


@pytest.mark.asyncio
async def test_side_effect_job_drains_queue(scheduler_manager):
    """The drain job processes pending side effects."""
    await scheduler_manager._side_effect_job()

    scheduler_manager.side_effects.process_pending.assert_awaited_once()


@pytest.mark.asyncio
async def test_side_effect_job_survives_errors(scheduler_manager):
    scheduler_manager.side_effects.process_pending.side_effect = RuntimeError("boom")

    await scheduler_manager._side_effect_job()


# ===========================
# Control Tests
# ===========================

def test_start_registers_jobs(scheduler_manager):
    """start() schedules the sweep and the side-effect drain."""
    with patch('recurflow.scheduler.jobs.AsyncIOScheduler') as mock_scheduler_cls:
        scheduler = Mock()
        mock_scheduler_cls.return_value = scheduler

        scheduler_manager.start()

        job_ids = [c.kwargs["id"] for c in scheduler.add_job.call_args_list]
        assert job_ids == [SWEEP_JOB_ID, SIDE_EFFECT_JOB_ID]
        sweep_kwargs = scheduler.add_job.call_args_list[0].kwargs
        assert sweep_kwargs["max_instances"] == 1
        assert sweep_kwargs["coalesce"] is True
        scheduler.start.assert_called_once()

        scheduler_manager.stop()
        scheduler.shutdown.assert_called_once_with(wait=False)


def test_trigger_job_without_scheduler(scheduler_manager):
    assert scheduler_manager.trigger_job(SWEEP_JOB_ID) is False
    assert scheduler_manager.get_job_status() == {}


def test_trigger_job_unknown_id(scheduler_manager):
    scheduler_manager.scheduler = Mock()
    scheduler_manager.scheduler.get_job.return_value = None

    assert scheduler_manager.trigger_job("nope") is False


def test_get_job_status(scheduler_manager):
    job = Mock()
    job.id = SWEEP_JOB_ID
    job.name = "Recurrence Sweep"
    job.next_run_time = None
    job.trigger = "interval[0:01:00]"
    scheduler_manager.scheduler = Mock()
    scheduler_manager.scheduler.get_jobs.return_value = [job]

    status = scheduler_manager.get_job_status()

    assert status == {
        SWEEP_JOB_ID: {"name": "Recurrence Sweep", "next_run": None, "trigger": "interval[0:01:00]"}
    }
