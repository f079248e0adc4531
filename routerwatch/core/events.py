"""In-memory async event bus for router state transitions."""

from __future__ import annotations

import asyncio
import logging

from routerwatch.core.models import RouterEvent

logger = logging.getLogger(__name__)


class EventBus:
    """Async pub/sub event bus using per-subscriber queues.

    Trackers publish RouterEvent objects; subscribers (trigger dispatcher,
    WebSocket clients) receive them via asyncio.Queue.
    """

    def __init__(self, max_history: int = 500) -> None:
        self._subscribers: list[asyncio.Queue[RouterEvent]] = []
        self._history: list[RouterEvent] = []
        self._max_history = max_history

    def subscribe(self) -> asyncio.Queue[RouterEvent]:
        """Create a new subscription queue and return it."""
        queue: asyncio.Queue[RouterEvent] = asyncio.Queue(maxsize=256)
        self._subscribers.append(queue)
        logger.debug("New event subscriber (total: %d)", len(self._subscribers))
        return queue

    def unsubscribe(self, queue: asyncio.Queue[RouterEvent]) -> None:
        """Remove a subscription queue."""
        try:
            self._subscribers.remove(queue)
            logger.debug("Subscriber removed (total: %d)", len(self._subscribers))
        except ValueError:
            pass

    def publish(self, event: RouterEvent) -> None:
        """Publish an event to all subscribers without suspending."""
        self._history.append(event)
        if len(self._history) > self._max_history:
            self._history = self._history[-self._max_history:]

        logger.info(
            "Event: %s | ap=%s client=%s",
            event.event_type.value,
            event.access_point or "network",
            event.client.mac if event.client else "N/A",
        )

        dead_queues: list[asyncio.Queue[RouterEvent]] = []
        for queue in self._subscribers:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                # Drop oldest event and try again
                try:
                    queue.get_nowait()
                    queue.put_nowait(event)
                except (asyncio.QueueEmpty, asyncio.QueueFull):
                    dead_queues.append(queue)

        for q in dead_queues:
            self.unsubscribe(q)

    def publish_all(self, events: list[RouterEvent]) -> None:
        for event in events:
            self.publish(event)

    @property
    def recent_events(self) -> list[RouterEvent]:
        """Return the most recent events (newest first)."""
        return list(reversed(self._history))
