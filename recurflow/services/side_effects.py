"""
Side-effect queue - delivers notifications and activity entries after firings.

Features:
- Enqueue never drops: entries stay queued until delivered or dead-lettered
- Immediate dispatch as a tracked background task
- Exponential backoff retries driven by the scheduler's drain job
- Dead letter list with manual retry

Failures here never touch recurrence state; the firing that produced the
side effect has already been persisted.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from config import settings
from ..utils.background_tasks import create_safe_task
from ..utils.datetime_utils import utc_now
from ..utils.retry import backoff_delay

logger = logging.getLogger(__name__)


class SideEffectType(Enum):
    """Kinds of side effects the engine produces."""
    NOTIFICATION = "notification"
    ACTIVITY_LOG = "activity_log"


class SideEffectStatus(Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    DEAD_LETTER = "dead_letter"  # Max retries exceeded


@dataclass
class QueuedSideEffect:
    """A side effect waiting for delivery or retry."""
    id: str
    effect_type: SideEffectType
    payload: Dict[str, Any]
    status: SideEffectStatus = SideEffectStatus.PENDING
    retry_count: int = 0
    max_retries: int = 5
    next_retry_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utc_now)
    last_error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


Handler = Callable[[Dict[str, Any]], Awaitable[Any]]


class SideEffectQueue:
    """
    In-memory queue of side effects with retry and dead-lettering.

    Handlers are async callables taking the payload. Returning False or
    raising counts as a failed attempt.
    """

    def __init__(
        self,
        max_retries: Optional[int] = None,
        base_retry_delay_seconds: Optional[float] = None,
        max_retry_delay_seconds: float = 3600,
    ):
        self._queue: Dict[str, QueuedSideEffect] = {}
        self._dead_letter: List[QueuedSideEffect] = []
        self._handlers: Dict[SideEffectType, Handler] = {}

        self.max_retries = max_retries if max_retries is not None else settings.side_effect_max_retries
        self.base_retry_delay_seconds = (
            base_retry_delay_seconds
            if base_retry_delay_seconds is not None
            else settings.side_effect_base_retry_delay_seconds
        )
        self.max_retry_delay_seconds = max_retry_delay_seconds

        self._counter = 0

    def _generate_id(self) -> str:
        self._counter += 1
        return f"FX-{utc_now().strftime('%Y%m%d%H%M%S')}-{self._counter:04d}"

    def register_handler(self, effect_type: SideEffectType, handler: Handler) -> None:
        self._handlers[effect_type] = handler
        logger.debug(f"Registered handler for {effect_type.value}")

    # ==================== QUEUE OPERATIONS ====================

    async def enqueue(
        self,
        effect_type: SideEffectType,
        payload: Dict[str, Any],
        metadata: Dict[str, Any] = None,
        dispatch: bool = True,
    ) -> str:
        """
        Add a side effect to the queue.

        With dispatch=True a background task delivers it right away; the
        entry stays queued for the drain job if that attempt fails.

        Returns:
            Entry ID
        """
        entry_id = self._generate_id()
        self._queue[entry_id] = QueuedSideEffect(
            id=entry_id,
            effect_type=effect_type,
            payload=payload,
            max_retries=self.max_retries,
            metadata=metadata or {},
        )
        logger.debug(f"Enqueued side effect {entry_id} ({effect_type.value})")

        if dispatch:
            create_safe_task(self.dispatch(entry_id), f"side-effect-{entry_id}")

        return entry_id

    async def notify(self, topic: str, payload: Dict[str, Any], **kwargs) -> str:
        """Queue an event bus publication."""
        return await self.enqueue(
            SideEffectType.NOTIFICATION,
            {"topic": topic, "payload": payload},
            metadata={"topic": topic},
            **kwargs,
        )

    async def log_activity(self, entry: Dict[str, Any], **kwargs) -> str:
        """Queue an activity log entry."""
        return await self.enqueue(
            SideEffectType.ACTIVITY_LOG,
            entry,
            metadata={"action": entry.get("action")},
            **kwargs,
        )

    # ==================== PROCESSING ====================

    async def dispatch(self, entry_id: str) -> bool:
        """Attempt delivery of one entry if it is ready."""
        entry = self._queue.get(entry_id)
        if entry is None or not self._is_ready(entry, utc_now()):
            return False
        return await self._process(entry)

    async def process_pending(self) -> int:
        """
        Attempt every entry whose retry time has come.

        Returns number of entries attempted.
        """
        now = utc_now()
        ready = [entry for entry in list(self._queue.values()) if self._is_ready(entry, now)]

        for entry in ready:
            await self._process(entry)

        if ready:
            logger.info(f"Processed {len(ready)} queued side effects")
        return len(ready)

    def _is_ready(self, entry: QueuedSideEffect, now: datetime) -> bool:
        return entry.status == SideEffectStatus.PENDING and (
            entry.next_retry_at is None or entry.next_retry_at <= now
        )

    async def _process(self, entry: QueuedSideEffect) -> bool:
        handler = self._handlers.get(entry.effect_type)
        if handler is None:
            logger.error(f"No handler for side effect type {entry.effect_type.value}")
            return False

        # Claimed synchronously so the immediate dispatch and the drain job never overlap
        entry.status = SideEffectStatus.PROCESSING

        try:
            result = await handler(entry.payload)
            if result is False:
                raise RuntimeError("Handler reported failure")
        except Exception as e:
            self._record_failure(entry, e)
            return False

        entry.status = SideEffectStatus.COMPLETED
        self._queue.pop(entry.id, None)
        logger.debug(f"Delivered side effect {entry.id}")
        return True

    def _record_failure(self, entry: QueuedSideEffect, error: Exception) -> None:
        entry.last_error = str(error)
        entry.retry_count += 1

        if entry.retry_count >= entry.max_retries:
            entry.status = SideEffectStatus.DEAD_LETTER
            self._queue.pop(entry.id, None)
            self._dead_letter.append(entry)
            logger.error(
                f"Side effect {entry.id} moved to dead letter after "
                f"{entry.retry_count} attempts: {error}"
            )
            return

        delay = backoff_delay(
            entry.retry_count - 1,
            base_delay=self.base_retry_delay_seconds,
            max_delay=self.max_retry_delay_seconds,
            jitter=False,
        )
        entry.next_retry_at = utc_now() + timedelta(seconds=delay)
        entry.status = SideEffectStatus.PENDING
        logger.warning(
            f"Side effect {entry.id} retry #{entry.retry_count} scheduled for "
            f"{entry.next_retry_at}: {error}"
        )

    # ==================== STATUS & MONITORING ====================

    def get_queue_stats(self) -> Dict[str, Any]:
        """Get current queue statistics."""
        by_type: Dict[str, int] = {}
        for entry in self._queue.values():
            key = entry.effect_type.value
            by_type[key] = by_type.get(key, 0) + 1

        return {
            "total_queued": len(self._queue),
            "pending": sum(1 for e in self._queue.values() if e.status == SideEffectStatus.PENDING),
            "processing": sum(1 for e in self._queue.values() if e.status == SideEffectStatus.PROCESSING),
            "dead_letter": len(self._dead_letter),
            "by_type": by_type,
        }

    def get_dead_letter_entries(self) -> List[Dict[str, Any]]:
        return [
            {
                "id": entry.id,
                "type": entry.effect_type.value,
                "created_at": entry.created_at.isoformat(),
                "retry_count": entry.retry_count,
                "last_error": entry.last_error,
                "payload_preview": str(entry.payload)[:200],
            }
            for entry in self._dead_letter
        ]

    async def retry_dead_letter(self, entry_id: str) -> bool:
        """Manually re-queue a dead-lettered entry."""
        for i, entry in enumerate(self._dead_letter):
            if entry.id == entry_id:
                entry.status = SideEffectStatus.PENDING
                entry.retry_count = 0
                entry.next_retry_at = None
                self._queue[entry.id] = entry
                del self._dead_letter[i]
                logger.info(f"Re-queued dead letter side effect {entry_id}")
                return True
        return False


def register_default_handlers(queue: SideEffectQueue) -> None:
    """Wire notifications to the event bus and activity entries to the audit log."""
    from ..database.repositories import get_audit_repository
    from .notifier import get_event_bus

    async def _publish(payload: Dict[str, Any]) -> bool:
        return await get_event_bus().publish(payload["topic"], payload["payload"])

    async def _append_activity(payload: Dict[str, Any]) -> bool:
        await get_audit_repository().append(payload)
        return True

    queue.register_handler(SideEffectType.NOTIFICATION, _publish)
    queue.register_handler(SideEffectType.ACTIVITY_LOG, _append_activity)


# Singleton
_side_effect_queue: Optional[SideEffectQueue] = None


def get_side_effect_queue() -> SideEffectQueue:
    """Get the side-effect queue singleton with the default handlers."""
    global _side_effect_queue
    if _side_effect_queue is None:
        _side_effect_queue = SideEffectQueue()
        register_default_handlers(_side_effect_queue)
    return _side_effect_queue
