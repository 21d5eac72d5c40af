"""
Safe background task execution with error handling.

Fire-and-forget work (side-effect dispatch after a firing) must never fail
silently or be garbage-collected mid-flight, so every task is tracked and
its errors logged with a stack trace.
"""

import asyncio
import logging
from typing import Any, Coroutine, Set

logger = logging.getLogger(__name__)

# Strong references keep running tasks alive until they finish
_active_background_tasks: Set[asyncio.Task] = set()


async def safe_background_task(coro: Coroutine, task_name: str) -> Any:
    """
    Await a coroutine, logging instead of raising on failure.

    Returns:
        Result of the coroutine if successful, None on error
    """
    try:
        result = await coro
        logger.debug(f"Background task completed: {task_name}")
        return result
    except Exception as e:
        logger.error(f"Background task failed: {task_name} - {e}", exc_info=True)
        return None


def create_safe_task(coro: Coroutine, task_name: str) -> asyncio.Task:
    """
    Schedule a tracked background task.

    Example:
        create_safe_task(queue.dispatch(entry_id), f"side-effect-{entry_id}")
    """
    task = asyncio.create_task(safe_background_task(coro, task_name), name=task_name)
    _active_background_tasks.add(task)
    task.add_done_callback(_active_background_tasks.discard)

    logger.debug(f"Created background task: {task_name}")
    return task


def active_task_count() -> int:
    """Number of background tasks still running."""
    return len(_active_background_tasks)


async def drain_background_tasks(timeout: float = 10.0) -> None:
    """Wait for outstanding background tasks, used on shutdown."""
    if not _active_background_tasks:
        return
    pending = list(_active_background_tasks)
    logger.info(f"Waiting for {len(pending)} background task(s)")
    done, still_pending = await asyncio.wait(pending, timeout=timeout)
    for task in still_pending:
        task.cancel()
    if still_pending:
        logger.warning(f"Cancelled {len(still_pending)} background task(s) on shutdown")
