"""WebSocket connection manager for real-time event broadcasting."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from fastapi import WebSocket

from routerwatch.core.events import EventBus
from routerwatch.core.models import RouterEvent

logger = logging.getLogger(__name__)


def serialize_event(event: RouterEvent) -> str:
    """Serialize a RouterEvent to JSON for WebSocket transmission."""
    data: dict[str, Any] = {
        "event": event.event_type.value,
        "access_point": event.access_point,
        "timestamp": event.timestamp.isoformat(),
        "tokens": event.tokens,
    }
    if event.medium:
        data["medium"] = event.medium.value
    if event.client:
        data["client"] = json.loads(event.client.model_dump_json())
        data["client"]["display_name"] = event.client.display_name
    return json.dumps(data, default=str)


class WebSocketManager:
    """Manages WebSocket connections and broadcasts events from the event bus."""

    def __init__(self, event_bus: EventBus) -> None:
        self._event_bus = event_bus
        self._connections: list[WebSocket] = []
        self._queue: asyncio.Queue[RouterEvent] | None = None
        self._task: asyncio.Task[None] | None = None

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    async def start(self) -> None:
        """Start listening to the event bus and broadcasting to clients."""
        self._queue = self._event_bus.subscribe()
        self._task = asyncio.create_task(self._broadcast_loop())
        logger.info("WebSocket manager started")

    async def stop(self) -> None:
        """Stop the broadcast loop."""
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._queue is not None:
            self._event_bus.unsubscribe(self._queue)
            self._queue = None
        logger.info("WebSocket manager stopped")

    async def connect(self, websocket: WebSocket) -> None:
        """Accept a new WebSocket connection."""
        await websocket.accept()
        self._connections.append(websocket)
        logger.info("WebSocket client connected (total: %d)", len(self._connections))

    def disconnect(self, websocket: WebSocket) -> None:
        """Remove a disconnected WebSocket client."""
        try:
            self._connections.remove(websocket)
        except ValueError:
            pass
        logger.info("WebSocket client disconnected (total: %d)", len(self._connections))

    async def _broadcast_loop(self) -> None:
        """Continuously read events from the bus and send to all clients."""
        assert self._queue is not None
        while True:
            event = await self._queue.get()
            try:
                await self._broadcast(serialize_event(event))
            except Exception as exc:
                logger.error("Broadcast loop error: %s", exc)

    async def _broadcast(self, message: str) -> None:
        """Send a message to all connected clients, dropping the dead ones."""
        dead: list[WebSocket] = []
        for ws in self._connections:
            try:
                await ws.send_text(message)
            except Exception:
                dead.append(ws)
        for ws in dead:
            self.disconnect(ws)
