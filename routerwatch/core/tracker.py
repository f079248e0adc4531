"""Per access point state tracking: fetch, diff against retained state, emit events.

State lives in an immutable :class:`TrackerState`. The ``apply_*`` reducers are
pure: they take the current state and one observation and return the next state
plus the events the transition produced. :class:`DeviceStateTracker` only
fetches, swaps its state reference, publishes the events and pushes capability
values. Reducers never await, so categories refreshed concurrently on the same
loop cannot overwrite each other's updates.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from routerwatch.core import capabilities as caps
from routerwatch.core.capabilities import categories_for
from routerwatch.core.client import RouterClient
from routerwatch.core.differ import diff, index
from routerwatch.core.errors import PartialUpdateError, warning_message
from routerwatch.core.events import EventBus
from routerwatch.core.models import (
    MEDIUM_EVENTS,
    AccessPoint,
    ConnectedClient,
    EventType,
    Medium,
    OperationMode,
    PollCategory,
    RouterEvent,
    RouterInfo,
    RouterSnapshot,
    TrafficCounters,
    UpdateResult,
    WanStatus,
)
from routerwatch.core.sinks import CapabilitySink
from routerwatch.core.vendor import VendorResolver

logger = logging.getLogger(__name__)

DEFAULT_TRAFFIC_SAMPLE_DELAY = 2.0

# Only category polled while a device is unavailable
AVAILABILITY_CATEGORY = PollCategory.UPTIME


def _empty_clients() -> dict[Medium, tuple[ConnectedClient, ...]]:
    return {medium: () for medium in Medium}


class TrackerState(BaseModel):
    """Everything a tracker retains between polls."""

    model_config = ConfigDict(frozen=True)

    snapshot: RouterSnapshot = Field(default_factory=RouterSnapshot)
    clients: dict[Medium, tuple[ConnectedClient, ...]] = Field(default_factory=_empty_clients)
    clients_populated: bool = False
    wan_observed: bool = False
    firmware: str | None = None
    new_firmware: str | None = None
    failed: frozenset[PollCategory] = frozenset()
    available: bool = True

    @property
    def all_clients(self) -> list[ConnectedClient]:
        return [client for medium in Medium for client in self.clients[medium]]

    @property
    def warning(self) -> str | None:
        if not self.failed:
            return None
        ordered = [c for c in PollCategory if c in self.failed]
        return warning_message(ordered)


# ---------------------------------------------------------------------------
# Pure reducers
# ---------------------------------------------------------------------------

def _event(
    event_type: EventType,
    access_point: str | None,
    tokens: dict[str, Any],
    client: ConnectedClient | None = None,
    medium: Medium | None = None,
) -> RouterEvent:
    return RouterEvent(
        event_type=event_type,
        access_point=access_point,
        medium=medium,
        client=client,
        tokens=tokens,
    )


def _client_tokens(client: ConnectedClient) -> dict[str, Any]:
    return {**client.tokens(), "medium": client.medium.value}


def partition_by_medium(clients: Iterable[ConnectedClient]) -> dict[Medium, tuple[ConnectedClient, ...]]:
    """Split one snapshot by medium; a MAC appears at most once overall."""
    buckets: dict[Medium, list[ConnectedClient]] = {medium: [] for medium in Medium}
    for client in index(clients, lambda c: c.mac).values():
        buckets[client.medium].append(client)
    return {medium: tuple(items) for medium, items in buckets.items()}


def apply_clients(
    state: TrackerState,
    clients: Iterable[ConnectedClient],
    access_point: str,
) -> tuple[TrackerState, list[RouterEvent]]:
    """Diff a fresh client list against the retained one.

    Emits one aggregate event per client that joined or left the access point
    and one medium-tagged event per client that joined or left a medium. The
    first population of a tracker emits nothing.
    """
    new_clients = partition_by_medium(clients)
    new_state = state.model_copy(update={"clients": new_clients, "clients_populated": True})
    if not state.clients_populated:
        return new_state, []

    events: list[RouterEvent] = []
    overall = diff(state.all_clients, new_state.all_clients)
    for client in overall.left:
        events.append(_event(EventType.DEVICE_DISCONNECTED, access_point, _client_tokens(client), client))
    for client in overall.entered:
        events.append(_event(EventType.DEVICE_CONNECTED, access_point, _client_tokens(client), client))

    for medium in Medium:
        connected_type, disconnected_type = MEDIUM_EVENTS[medium]
        per_medium = diff(state.clients[medium], new_clients[medium])
        for client in per_medium.left:
            events.append(_event(disconnected_type, access_point, _client_tokens(client), client, medium))
        for client in per_medium.entered:
            events.append(_event(connected_type, access_point, _client_tokens(client), client, medium))

    return new_state, events


def apply_wan_status(
    state: TrackerState,
    wan: WanStatus,
    access_point: str,
) -> tuple[TrackerState, list[RouterEvent]]:
    """Emit WAN events only when a value differs from the previous observation."""
    previous = state.snapshot
    snapshot = previous.model_copy(
        update={
            "wan_connected": wan.connected,
            "external_ip": wan.external_ip,
            "wan_type": wan.link_type,
        }
    )
    new_state = state.model_copy(update={"snapshot": snapshot, "wan_observed": True})
    if not state.wan_observed:
        return new_state, []

    events: list[RouterEvent] = []
    if previous.wan_connected != wan.connected:
        events.append(_event(EventType.WAN_CONNECTION_CHANGED, access_point, {"wan_connected": wan.connected}))
    if previous.external_ip != wan.external_ip:
        events.append(_event(EventType.EXTERNAL_IP_CHANGED, access_point, {"external_ip": wan.external_ip or ""}))
    if previous.wan_type != wan.link_type:
        events.append(_event(EventType.WAN_TYPE_CHANGED, access_point, {"wan_type": wan.link_type or ""}))
    return new_state, events


def apply_traffic(
    state: TrackerState,
    first: TrafficCounters,
    second: TrafficCounters,
) -> TrackerState:
    """Totals come from the second read, rates from the difference of both."""
    snapshot = state.snapshot.model_copy(
        update={
            "bytes_received": second.received,
            "bytes_sent": second.sent,
            # A counter reset between the two reads is reported as no traffic
            "download_rate": max(0, second.received - first.received),
            "upload_rate": max(0, second.sent - first.sent),
        }
    )
    return state.model_copy(update={"snapshot": snapshot})


def apply_firmware(
    state: TrackerState,
    info: RouterInfo,
    access_point: str,
) -> tuple[TrackerState, list[RouterEvent]]:
    events: list[RouterEvent] = []
    if state.firmware is not None and info.new_firmware and info.new_firmware != state.new_firmware:
        events.append(_event(EventType.NEW_FIRMWARE_AVAILABLE, access_point, {"version": info.new_firmware}))
    new_state = state.model_copy(
        update={"firmware": info.firmware or state.firmware or "", "new_firmware": info.new_firmware}
    )
    return new_state, events


def apply_metric(state: TrackerState, **values: Any) -> TrackerState:
    return state.model_copy(update={"snapshot": state.snapshot.model_copy(update=values)})


def record_outcome(
    state: TrackerState,
    category: PollCategory,
    ok: bool,
    applicable: Iterable[PollCategory],
) -> TrackerState:
    """Track the latest outcome per category and derive availability.

    A device is unavailable once every applicable category is failing, and
    available again after any success.
    """
    failed = state.failed - {category} if ok else state.failed | {category}
    available = True if ok else not set(applicable) <= failed
    return state.model_copy(update={"failed": frozenset(failed), "available": available})


# ---------------------------------------------------------------------------
# Tracker
# ---------------------------------------------------------------------------

class DeviceStateTracker:
    """Owns the retained snapshots of one managed router or access point."""

    def __init__(
        self,
        access_point: AccessPoint,
        client: RouterClient,
        event_bus: EventBus,
        capabilities: CapabilitySink,
        mode: OperationMode = OperationMode.ROUTER,
        traffic_sample_delay: float = DEFAULT_TRAFFIC_SAMPLE_DELAY,
        filter_clients: bool = False,
        vendors: VendorResolver | None = None,
    ) -> None:
        self.access_point = access_point
        self.client = client
        self.event_bus = event_bus
        self.capabilities = capabilities
        self.mode = mode
        self.traffic_sample_delay = traffic_sample_delay
        self.filter_clients = filter_clients
        self.vendors = vendors
        self._state = TrackerState()
        self._running: dict[PollCategory, asyncio.Task[list[RouterEvent]]] = {}

    @property
    def mac(self) -> str:
        return self.access_point.mac

    @property
    def state(self) -> TrackerState:
        return self._state

    @property
    def categories(self) -> tuple[PollCategory, ...]:
        return categories_for(self.mode)

    @property
    def clients(self) -> list[ConnectedClient]:
        return self._state.all_clients

    @property
    def available(self) -> bool:
        return self._state.available

    @property
    def warning(self) -> str | None:
        return self._state.warning

    def clients_on(self, medium: Medium) -> list[ConnectedClient]:
        return list(self._state.clients[medium])

    def set_operation_mode(self, mode: OperationMode) -> None:
        if mode != self.mode:
            logger.info("Access point %s switched to %s", self.mac, mode.name)
            self.mode = mode
            self._state = self._state.model_copy(
                update={"failed": self._state.failed & set(categories_for(mode))}
            )

    def _commit(self, state: TrackerState, events: list[RouterEvent] | None = None) -> list[RouterEvent]:
        self._state = state
        if events:
            self.event_bus.publish_all(events)
        return events or []

    async def _set_capability(self, name: str, value: Any) -> None:
        if await self.capabilities.has_capability(name):
            await self.capabilities.set_value(name, value)

    # ------------------------------------------------------------------
    # Category handlers
    # ------------------------------------------------------------------

    async def _refresh_online_devices(self) -> list[RouterEvent]:
        clients = await self.client.get_online_clients(self.mac if self.filter_clients else None)
        if self.vendors is not None:
            clients = await self.vendors.fill(clients)
        state, events = apply_clients(self._state, clients, self.mac)
        self._commit(state, events)
        await self._set_capability(caps.METER_ONLINE_DEVICES, len(state.all_clients))
        return events

    async def _refresh_wan_status(self) -> list[RouterEvent]:
        wan = await self.client.get_wan_status()
        state, events = apply_wan_status(self._state, wan, self.mac)
        self._commit(state, events)
        await self._set_capability(caps.ALARM_WAN_DISCONNECTED, not wan.connected)
        await self._set_capability(caps.EXTERNAL_IP, wan.external_ip)
        await self._set_capability(caps.WAN_TYPE, wan.link_type)
        return events

    async def _refresh_cpu_usage(self) -> list[RouterEvent]:
        cpu = round(await self.client.get_cpu_usage(), 1)
        self._commit(apply_metric(self._state, cpu_percent=cpu))
        await self._set_capability(caps.METER_CPU_USAGE, cpu)
        return []

    async def _refresh_memory_usage(self) -> list[RouterEvent]:
        memory = round(await self.client.get_memory_usage(), 1)
        self._commit(apply_metric(self._state, memory_percent=memory))
        await self._set_capability(caps.METER_MEM_USED, memory)
        return []

    async def _refresh_uptime(self) -> list[RouterEvent]:
        seconds = await self.client.get_uptime()
        self._commit(apply_metric(self._state, uptime_seconds=seconds))
        await self._set_capability(caps.UPTIME_DAYS, round(seconds / caps.SECONDS_PER_DAY, 2))
        return []

    async def _refresh_traffic(self) -> list[RouterEvent]:
        first = await self.client.get_traffic()
        await asyncio.sleep(self.traffic_sample_delay)
        second = await self.client.get_traffic()
        state = apply_traffic(self._state, first, second)
        self._commit(state)
        snapshot = state.snapshot
        mb = caps.BYTES_PER_MEGABYTE
        await self._set_capability(caps.TRAFFIC_TOTAL_RECEIVED, round(second.received / mb, 2))
        await self._set_capability(caps.TRAFFIC_TOTAL_SENT, round(second.sent / mb, 2))
        await self._set_capability(caps.REALTIME_DOWNLOAD, round((snapshot.download_rate or 0) / mb, 3))
        await self._set_capability(caps.REALTIME_UPLOAD, round((snapshot.upload_rate or 0) / mb, 3))
        return []

    async def _refresh_firmware(self) -> list[RouterEvent]:
        info = await self.client.get_router_info()
        state, events = apply_firmware(self._state, info, self.mac)
        self.access_point = self.access_point.model_copy(
            update={"firmware": state.firmware or None, "new_firmware": state.new_firmware}
        )
        return self._commit(state, events)

    # ------------------------------------------------------------------
    # Refresh entry points
    # ------------------------------------------------------------------

    @property
    def in_flight(self) -> list[PollCategory]:
        return [c for c, task in self._running.items() if not task.done()]

    async def drain(self) -> None:
        """Wait for every running category fetch to finish."""
        running = [task for task in self._running.values() if not task.done()]
        if running:
            await asyncio.wait(running)

    async def refresh_category(self, category: PollCategory) -> list[RouterEvent]:
        """Refresh one category; failures are recorded and re-raised.

        At most one fetch per category runs at a time. A caller arriving while
        one is in flight waits for it and gets no events of its own, since the
        running fetch already published them. While the device is unavailable
        only uptime is fetched; the others return without polling.
        """
        if category not in self.categories:
            raise ValueError(f"{category.value} does not apply to {self.mode.name} {self.mac}")

        running = self._running.get(category)
        if running is not None and not running.done():
            logger.debug("%s of %s already in flight, waiting for it", category.label, self.mac)
            await asyncio.shield(running)
            return []

        if not self._state.available and category is not AVAILABILITY_CATEGORY:
            logger.debug("Skipping %s of unavailable access point %s", category.label, self.mac)
            return []

        task = asyncio.ensure_future(self._fetch_category(category))
        self._running[category] = task
        try:
            return await task
        finally:
            if self._running.get(category) is task:
                del self._running[category]

    async def _fetch_category(self, category: PollCategory) -> list[RouterEvent]:
        handler = getattr(self, f"_refresh_{category.name.lower()}")
        was_available = self._state.available
        try:
            events = await handler()
        except Exception as exc:
            self._state = record_outcome(self._state, category, False, self.categories)
            logger.warning("Failed to update %s for access point %s: %s", category.label, self.mac, exc)
            if was_available and not self._state.available:
                logger.warning("Access point %s marked unavailable", self.mac)
            raise

        self._state = record_outcome(self._state, category, True, self.categories)
        if not was_available:
            logger.info("Access point %s is available again", self.mac)
        return events

    async def _attempt(self, category: PollCategory) -> tuple[PollCategory, list[RouterEvent] | None]:
        try:
            return category, await self.refresh_category(category)
        except Exception:
            return category, None

    async def refresh(self, raise_on_failure: bool = False) -> UpdateResult:
        """Run one full cycle over every applicable category.

        Each category is isolated: one failing never aborts the others. An
        unavailable device is asked for uptime first and skipped if it still
        does not answer. With ``raise_on_failure`` a partially failed cycle
        raises :class:`PartialUpdateError` carrying the result.
        """
        result = UpdateResult()
        pending = list(self.categories)

        if not self._state.available and AVAILABILITY_CATEGORY in pending:
            pending.remove(AVAILABILITY_CATEGORY)
            _, events = await self._attempt(AVAILABILITY_CATEGORY)
            if events is None:
                result.failed.append(AVAILABILITY_CATEGORY)
                result.skipped.extend(pending)
                logger.info("Access point %s still unreachable, skipping cycle", self.mac)
                if raise_on_failure:
                    raise PartialUpdateError(result.failed, result)
                return result
            result.events.extend(events)

        logger.debug("Updating %d categories for access point %s", len(pending), self.mac)
        outcomes = await asyncio.gather(*(self._attempt(c) for c in pending))
        for category, events in outcomes:
            if events is None:
                result.failed.append(category)
            else:
                result.events.extend(events)

        if result.failed:
            logger.info("Failed to update some information for access point %s: %s", self.mac, self.warning)
            if raise_on_failure:
                raise PartialUpdateError(result.failed, result)
        else:
            logger.debug("Successfully updated all information for access point %s", self.mac)
        return result
