"""
Scheduler manager for the background sweep.

Handles the scheduled jobs:
- Recurrence sweep (every sweep_interval_seconds): fires every due recurrence
- Side-effect drain (every side_effect_retry_interval_seconds): retries
  queued notifications and activity entries

The sweep keeps no state between passes; everything it needs is read from
the recurrence store, so a restart simply resumes with the next pass.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

import pytz
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import settings
from ..models.recurrence import FireResult
from ..utils.datetime_utils import ensure_utc, utc_now

logger = logging.getLogger(__name__)

SWEEP_JOB_ID = "recurrence_sweep"
SIDE_EFFECT_JOB_ID = "side_effect_drain"


@dataclass
class SweepReport:
    """Summary of one sweep pass."""
    started_at: datetime
    finished_at: Optional[datetime] = None
    due: int = 0
    fired: List[str] = field(default_factory=list)
    noops: Dict[str, str] = field(default_factory=dict)  # recurrence_id -> reason
    errors: Dict[str, str] = field(default_factory=dict)  # recurrence_id -> error

    @property
    def error_count(self) -> int:
        return len(self.errors)

    def to_dict(self) -> dict:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "due": self.due,
            "fired": len(self.fired),
            "noops": len(self.noops),
            "errors": self.error_count,
        }


class SchedulerManager:
    """
    Runs the recurrence sweep and the side-effect drain on APScheduler.
    """

    def __init__(
        self,
        engine=None,
        side_effects=None,
        concurrency: Optional[int] = None,
        firing_timeout_seconds: Optional[float] = None,
    ):
        self.scheduler: Optional[AsyncIOScheduler] = None
        self.timezone = pytz.timezone(settings.timezone)
        self._engine = engine
        self._side_effects = side_effects
        self.concurrency = concurrency or settings.sweep_concurrency
        self.firing_timeout_seconds = firing_timeout_seconds or settings.firing_timeout_seconds
        self.last_report: Optional[SweepReport] = None

    @property
    def engine(self):
        if self._engine is None:
            from ..services.trigger_engine import get_trigger_engine
            self._engine = get_trigger_engine()
        return self._engine

    @property
    def side_effects(self):
        if self._side_effects is None:
            from ..services.side_effects import get_side_effect_queue
            self._side_effects = get_side_effect_queue()
        return self._side_effects

    def start(self) -> None:
        """Start the scheduler with all jobs."""
        self.scheduler = AsyncIOScheduler(timezone=self.timezone)

        # First pass right away so occurrences missed while down are caught up
        self.scheduler.add_job(
            self._sweep_job,
            IntervalTrigger(seconds=settings.sweep_interval_seconds),
            id=SWEEP_JOB_ID,
            name="Recurrence Sweep",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            next_run_time=datetime.now(self.timezone),
        )

        self.scheduler.add_job(
            self._side_effect_job,
            IntervalTrigger(seconds=settings.side_effect_retry_interval_seconds),
            id=SIDE_EFFECT_JOB_ID,
            name="Side Effect Retry",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

        self.scheduler.start()
        logger.info(
            f"Scheduler started: sweep every {settings.sweep_interval_seconds}s "
            f"(concurrency {self.concurrency}), side-effect drain every "
            f"{settings.side_effect_retry_interval_seconds}s"
        )

    def stop(self) -> None:
        """Stop the scheduler."""
        if self.scheduler:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")

    # ==================== JOBS ====================

    async def _sweep_job(self) -> None:
        try:
            report = await self.run_sweep()
            if report.due:
                logger.info(f"Sweep finished: {report.to_dict()}")
        except Exception as e:
            # Store unreachable; the next interval tries again
            logger.error(f"Error in recurrence sweep: {e}", exc_info=True)

    async def _side_effect_job(self) -> None:
        try:
            await self.side_effects.process_pending()
        except Exception as e:
            logger.error(f"Error draining side-effect queue: {e}", exc_info=True)

    async def run_sweep(self, now: Optional[datetime] = None) -> SweepReport:
        """
        Fire every recurrence whose next occurrence is due.

        Firings run concurrently up to the configured limit, each bounded by
        the firing timeout. A failing recurrence is recorded in the report
        and does not affect the others.
        """
        now = ensure_utc(now) if now else utc_now()
        report = SweepReport(started_at=now)

        due_ids = await self.engine.store.find_due(now)
        report.due = len(due_ids)
        if not due_ids:
            report.finished_at = utc_now()
            self.last_report = report
            return report

        logger.info(f"Found {len(due_ids)} recurrences due")
        semaphore = asyncio.Semaphore(self.concurrency)

        async def _fire_one(recurrence_id: str) -> None:
            async with semaphore:
                try:
                    result: FireResult = await asyncio.wait_for(
                        self.engine.fire(recurrence_id, now=now, manual=False),
                        timeout=self.firing_timeout_seconds,
                    )
                except asyncio.TimeoutError:
                    logger.error(
                        f"Firing {recurrence_id} timed out after {self.firing_timeout_seconds}s"
                    )
                    report.errors[recurrence_id] = "timeout"
                    return
                except Exception as e:
                    logger.error(f"Error firing recurrence {recurrence_id}: {e}", exc_info=True)
                    report.errors[recurrence_id] = f"{type(e).__name__}: {e}"
                    return

                if result.fired:
                    report.fired.append(recurrence_id)
                else:
                    report.noops[recurrence_id] = result.reason.value if result.reason else "noop"

        await asyncio.gather(*(_fire_one(recurrence_id) for recurrence_id in due_ids))

        report.finished_at = utc_now()
        self.last_report = report
        return report

    # ==================== CONTROL ====================

    def trigger_job(self, job_id: str) -> bool:
        """Manually trigger a job."""
        if not self.scheduler:
            return False

        job = self.scheduler.get_job(job_id)
        if job:
            job.modify(next_run_time=datetime.now(self.timezone))
            return True

        return False

    def get_job_status(self) -> dict:
        """Get status of all scheduled jobs."""
        if not self.scheduler:
            return {}

        jobs = {}
        for job in self.scheduler.get_jobs():
            jobs[job.id] = {
                "name": job.name,
                "next_run": job.next_run_time.isoformat() if job.next_run_time else None,
                "trigger": str(job.trigger)
            }
        return jobs


# Singleton
_scheduler_manager: Optional[SchedulerManager] = None


def get_scheduler_manager() -> SchedulerManager:
    """Get the scheduler manager instance."""
    global _scheduler_manager
    if _scheduler_manager is None:
        _scheduler_manager = SchedulerManager()
    return _scheduler_manager
