from .jobs import SchedulerManager, SweepReport, get_scheduler_manager

__all__ = ["SchedulerManager", "SweepReport", "get_scheduler_manager"]
