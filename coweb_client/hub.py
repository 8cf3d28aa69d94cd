"""Fire-and-forget notification hub for busy/ended announcements."""
from __future__ import annotations

import asyncio
import logging
from asyncio import QueueEmpty
from typing import Any, List

from .state import ControllerEvent, Topic

logger = logging.getLogger(__name__)


class NotificationHub:
    """Fans published events out to subscriber queues without ever blocking."""

    def __init__(self, queue_size: int = 16) -> None:
        self._queue_size = queue_size
        self._subscribers: List[asyncio.Queue[ControllerEvent]] = []

    def subscribe(self) -> asyncio.Queue[ControllerEvent]:
        queue: asyncio.Queue[ControllerEvent] = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[ControllerEvent]) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def publish(self, topic: Topic, payload: Any) -> None:
        """Deliver to every subscriber; a full queue loses its oldest event."""
        event = ControllerEvent(topic=topic, payload=payload)
        logger.debug("hub.publish %s %r", topic.value, payload)
        for queue in list(self._subscribers):
            try:
                if queue.full():
                    try:
                        queue.get_nowait()
                    except QueueEmpty:
                        pass
                queue.put_nowait(event)
            except Exception as e:
                logger.warning("Failed to publish event to subscriber: %s", e)


__all__ = ["NotificationHub"]
