"""Fan-out of agent status events to connected subscribers."""
from __future__ import annotations

import asyncio
import logging
from typing import Optional

from pixel_agents import config
from pixel_agents.models import AgentEvent

logger = logging.getLogger("pixel_agents.broadcast")


class EventHub:
    """Bounded per-subscriber queues.

    Delivery is at-least-once from the engine's side and best effort per
    subscriber: a subscriber whose queue is full loses its oldest event, and
    nobody else is affected.
    """

    def __init__(self, queue_size: int = config.SUBSCRIBER_QUEUE_SIZE):
        self.queue_size = queue_size
        self._subscribers: set[asyncio.Queue[Optional[AgentEvent]]] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> asyncio.Queue[Optional[AgentEvent]]:
        queue: asyncio.Queue[Optional[AgentEvent]] = asyncio.Queue(maxsize=self.queue_size)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[Optional[AgentEvent]]) -> None:
        self._subscribers.discard(queue)

    def publish(self, event: AgentEvent) -> None:
        for queue in list(self._subscribers):
            _queue_put(queue, event)

    def close(self) -> None:
        """Wake every subscriber with the end-of-stream marker."""
        for queue in list(self._subscribers):
            _queue_put(queue, None)
        self._subscribers.clear()


def _queue_put(queue: asyncio.Queue[Optional[AgentEvent]], value: Optional[AgentEvent]) -> None:
    try:
        queue.put_nowait(value)
        return
    except asyncio.QueueFull:
        pass

    try:
        queue.get_nowait()
    except asyncio.QueueEmpty:
        return
    logger.debug("Subscriber queue full; dropped oldest event")

    try:
        queue.put_nowait(value)
    except asyncio.QueueFull:
        return
