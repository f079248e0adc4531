"""Interfaces to the hosting side: capability values, triggers and settings.

The core only talks to these protocols. RouterWatch ships in-process
implementations so it can run standalone; a hub integration would provide its
own.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from typing import Any, Protocol

import httpx

from routerwatch.core.events import EventBus
from routerwatch.core.models import RouterEvent

logger = logging.getLogger(__name__)


class CapabilitySink(Protocol):
    async def set_value(self, name: str, value: Any) -> None: ...

    async def get_value(self, name: str) -> Any: ...

    async def has_capability(self, name: str) -> bool: ...

    async def add_capability(self, name: str) -> None: ...

    async def remove_capability(self, name: str) -> None: ...

    async def list_capabilities(self) -> list[str]: ...


class TriggerSink(Protocol):
    async def fire(self, event_name: str, subject: str | None, tokens: dict[str, Any]) -> None: ...


class SettingsStore(Protocol):
    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str) -> None: ...


# ---------------------------------------------------------------------------
# In-process implementations
# ---------------------------------------------------------------------------

class MemoryCapabilitySink:
    """Capability slots of one device, held in memory and served by the API."""

    def __init__(self) -> None:
        self._values: dict[str, Any] = {}

    async def set_value(self, name: str, value: Any) -> None:
        if name not in self._values:
            logger.debug("Ignoring value for unregistered capability %s", name)
            return
        self._values[name] = value

    async def get_value(self, name: str) -> Any:
        return self._values.get(name)

    async def has_capability(self, name: str) -> bool:
        return name in self._values

    async def add_capability(self, name: str) -> None:
        self._values.setdefault(name, None)

    async def remove_capability(self, name: str) -> None:
        self._values.pop(name, None)

    async def list_capabilities(self) -> list[str]:
        return list(self._values)

    def values(self) -> dict[str, Any]:
        return dict(self._values)


class MemorySettingsStore:
    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._data: dict[str, str] = dict(initial or {})

    async def get(self, key: str) -> str | None:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        self._data[key] = value


class LoggingTriggerSink:
    """Writes every fired trigger to the log."""

    async def fire(self, event_name: str, subject: str | None, tokens: dict[str, Any]) -> None:
        logger.info("Trigger %s (subject=%s): %s", event_name, subject or "network", tokens)


class WebhookTriggerSink:
    """POSTs every fired trigger as JSON to a webhook URL."""

    def __init__(self, url: str, timeout: float = 5.0, client: httpx.AsyncClient | None = None) -> None:
        self._url = url
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def fire(self, event_name: str, subject: str | None, tokens: dict[str, Any]) -> None:
        response = await self._client.post(
            self._url,
            json={"event": event_name, "subject": subject, "tokens": tokens},
        )
        response.raise_for_status()

    async def close(self) -> None:
        await self._client.aclose()


# ---------------------------------------------------------------------------
# Capability registration
# ---------------------------------------------------------------------------

async def _settle(sink: CapabilitySink, name: str, present: bool, delay: float) -> None:
    """Apply one add/remove and retry once if it is not visible after ``delay``."""
    for attempt in (1, 2):
        if present:
            await sink.add_capability(name)
        else:
            await sink.remove_capability(name)
        if delay:
            await asyncio.sleep(delay)
        if await sink.has_capability(name) == present:
            return
        logger.debug("Capability %s not settled after attempt %d", name, attempt)
    logger.warning("Capability %s could not be %s", name, "added" if present else "removed")


async def sync_capabilities(sink: CapabilitySink, wanted: Iterable[str], settle_delay: float = 0.0) -> None:
    """Make the sink expose exactly ``wanted``."""
    wanted = list(wanted)
    for name in wanted:
        if not await sink.has_capability(name):
            await _settle(sink, name, True, settle_delay)
    for name in await sink.list_capabilities():
        if name not in wanted:
            await _settle(sink, name, False, settle_delay)


# ---------------------------------------------------------------------------
# Event bus -> trigger sink adapter
# ---------------------------------------------------------------------------

class TriggerDispatcher:
    """Forwards events from the bus to a trigger sink; sink failures are only logged."""

    def __init__(self, event_bus: EventBus, sink: TriggerSink) -> None:
        self._event_bus = event_bus
        self._sink = sink
        self._queue: asyncio.Queue[RouterEvent] | None = None
        self._task: asyncio.Task[None] | None = None

    async def start(self) -> None:
        self._queue = self._event_bus.subscribe()
        self._task = asyncio.create_task(self._dispatch_loop())
        logger.info("Trigger dispatcher started")

    async def stop(self) -> None:
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
        logger.info("Trigger dispatcher stopped")

    async def dispatch(self, event: RouterEvent) -> None:
        try:
            await self._sink.fire(event.event_type.value, event.access_point, event.tokens)
        except Exception as exc:
            logger.error("Trigger %s failed: %s", event.event_type.value, exc)

    async def _dispatch_loop(self) -> None:
        assert self._queue is not None
        while True:
            event = await self._queue.get()
            await self.dispatch(event)
