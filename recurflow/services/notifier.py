"""
Event bus for recurrence events.

Publishes realtime events (recurrence created, triggered, stopped, ...) to a
configured webhook as JSON. Without a webhook the events are only logged.
"""

import logging
from typing import Any, Dict, Optional

import aiohttp

from config import settings
from ..scheduling.exceptions import SideEffectError
from ..utils.datetime_utils import utc_now
from ..utils.retry import RetryExhausted, with_webhook_retry

logger = logging.getLogger(__name__)

# Topics
RECURRENCE_CREATED = "recurrence-created"
RECURRENCE_UPDATED = "recurrence-updated"
RECURRENCE_STOPPED = "recurrence-stopped"
RECURRENCE_TRIGGERED = "recurrence-triggered"
HIERARCHY_SUBTASK_CHANGED = "hierarchy-subtask-changed"


class WebhookDeliveryError(aiohttp.ClientError):
    """Webhook answered with a non-success status."""
    pass


class EventBus:
    """Publishes recurrence events to the configured webhook."""

    def __init__(self, webhook_url: Optional[str] = None, timeout_seconds: Optional[float] = None):
        self.webhook_url = webhook_url if webhook_url is not None else settings.event_webhook_url
        self.timeout_seconds = timeout_seconds or settings.event_webhook_timeout_seconds

    @property
    def enabled(self) -> bool:
        return bool(self.webhook_url)

    async def publish(self, topic: str, payload: Dict[str, Any]) -> bool:
        """
        Publish an event.

        Raises:
            SideEffectError: If the webhook could not be reached after retries
        """
        event = {
            "topic": topic,
            "payload": payload,
            "published_at": utc_now().isoformat(),
        }

        if not self.enabled:
            logger.info(f"Event {topic}: {payload}")
            return True

        try:
            await self._post(event)
        except RetryExhausted as e:
            raise SideEffectError(f"Event {topic} not delivered: {e}") from e

        logger.debug(f"Published {topic} to webhook")
        return True

    @with_webhook_retry
    async def _post(self, event: Dict[str, Any]) -> None:
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.post(self.webhook_url, json=event) as response:
                if response.status >= 300:
                    body = await response.text()
                    raise WebhookDeliveryError(
                        f"Webhook returned {response.status}: {body[:200]}"
                    )


# Singleton
_event_bus: Optional[EventBus] = None


def get_event_bus() -> EventBus:
    """Get the event bus singleton."""
    global _event_bus
    if _event_bus is None:
        _event_bus = EventBus()
    return _event_bus
