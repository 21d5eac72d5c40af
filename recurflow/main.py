"""
Recurflow - Main Process Entry Point

Runs the recurrence sweep and side-effect drain until interrupted.
"""

import asyncio
import logging
import signal
import sys

from config import settings
from .database import init_database, close_database
from .database.repositories import get_work_item_repository
from .scheduler.jobs import get_scheduler_manager
from .services.trigger_engine import get_trigger_engine
from .utils.background_tasks import drain_background_tasks

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.debug else getattr(logging, settings.log_level.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout)
    ]
)

logger = logging.getLogger(__name__)


async def run() -> None:
    """Start the engine and block until a shutdown signal arrives."""
    logger.info(f"Starting {settings.app_name} ({settings.environment})...")

    if not await init_database():
        logger.error("Database not available, exiting")
        return

    # After-completion recurrences advance when their instance is completed
    get_work_item_repository().subscribe_completion(get_trigger_engine().handle_instance_completed)

    scheduler = get_scheduler_manager()
    scheduler.start()

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # add_signal_handler is unavailable on Windows event loops
            pass

    try:
        await stop_event.wait()
    finally:
        logger.info("Shutting down...")
        scheduler.stop()
        await drain_background_tasks()
        await close_database()
        logger.info("Shutdown complete")


def main() -> None:
    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
