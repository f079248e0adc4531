"""Main entry point: bootstraps database, router clients, trackers, scheduler, and API server."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from urllib.parse import urlsplit

from routerwatch.config import Settings, get_settings
from routerwatch.core.capabilities import capabilities_for
from routerwatch.core.client import RouterClient
from routerwatch.core.db import RouterDatabase
from routerwatch.core.errors import PartialUpdateError, RouterError
from routerwatch.core.events import EventBus
from routerwatch.core.models import (
    AccessPoint,
    OperationMode,
    PollCategory,
    RouterEvent,
    UpdateResult,
    normalize_mac,
)
from routerwatch.core.network import NetworkTracker
from routerwatch.core.scheduler import PollScheduler
from routerwatch.core.sinks import (
    LoggingTriggerSink,
    MemoryCapabilitySink,
    SettingsStore,
    TriggerDispatcher,
    TriggerSink,
    WebhookTriggerSink,
    sync_capabilities,
)
from routerwatch.core.tracker import DeviceStateTracker
from routerwatch.core.vendor import VendorResolver

logger = logging.getLogger(__name__)

NETWORK_OWNER = "network"
NETWORK_CYCLE = "network-clients"

ClientFactory = Callable[[str], RouterClient]


def _host(url: str) -> str:
    return urlsplit(url if "://" in url else f"http://{url}").hostname or url


def _ap_url(router_url: str, ip: str) -> str:
    scheme = urlsplit(router_url).scheme or "http"
    return f"{scheme}://{ip}"


def _mode_key(mac: str) -> str:
    return f"operation_mode:{mac}"


async def load_stored_settings(settings: Settings, store: SettingsStore) -> Settings:
    """Fill router address and username from the settings store unless configured explicitly."""
    update = {}
    for key in ("router_url", "username"):
        if key in settings.model_fields_set:
            continue
        stored = await store.get(key)
        if stored:
            update[key] = stored
    return settings.model_copy(update=update) if update else settings


@dataclass
class ManagedAccessPoint:
    """Everything RouterWatch owns for one adopted router or access point."""

    access_point: AccessPoint
    client: RouterClient
    tracker: DeviceStateTracker
    capabilities: MemoryCapabilitySink = field(default_factory=MemoryCapabilitySink)

    @property
    def mac(self) -> str:
        return self.access_point.mac


class RouterMonitor:
    """Coordinates discovery, adoption, periodic polling and device actions."""

    def __init__(
        self,
        settings: Settings,
        store: SettingsStore,
        event_bus: EventBus,
        client_factory: ClientFactory | None = None,
        vendors: VendorResolver | None = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.event_bus = event_bus
        self.vendors = vendors
        self._client_factory = client_factory or self._default_client
        self.scheduler = PollScheduler(settings.backoff_factor)
        self.network = NetworkTracker(event_bus)
        self.devices: dict[str, ManagedAccessPoint] = {}

    def _default_client(self, base_url: str) -> RouterClient:
        return RouterClient(
            base_url,
            self.settings.username,
            self.settings.password.get_secret_value(),
            timeout=self.settings.request_timeout,
            session_expiry=self.settings.session_expiry,
            user_agent=self.settings.user_agent,
        )

    # ------------------------------------------------------------------
    # Discovery and adoption
    # ------------------------------------------------------------------

    async def discover(self) -> list[AccessPoint]:
        """List the routers and access points reachable through the main router."""
        client = self._client_factory(self.settings.router_url)
        try:
            try:
                access_points = await client.get_access_points()
            except RouterError as exc:
                logger.info("Mesh listing unavailable (%s), falling back to router info", exc)
                access_points = []
            if not access_points:
                info = await client.get_router_info()
                if not info.mac:
                    raise RouterError(f"Router at {self.settings.router_url} did not report its MAC")
                access_points = [
                    AccessPoint(
                        mac=info.mac,
                        ip=_host(self.settings.router_url),
                        model=info.product_id,
                        firmware=info.firmware,
                        new_firmware=info.new_firmware,
                    )
                ]
        finally:
            await client.dispose()
        logger.info("Discovered %d access points", len(access_points))
        return access_points

    def detect_operation_mode(self, access_point: AccessPoint) -> OperationMode:
        """The node answering at the configured router address is the router."""
        if access_point.ip == _host(self.settings.router_url):
            return OperationMode.ROUTER
        return OperationMode.ACCESS_POINT

    async def _resolve_mode(self, access_point: AccessPoint, redetect: bool = False) -> OperationMode:
        stored = None if redetect else await self.store.get(_mode_key(access_point.mac))
        if stored is not None:
            return OperationMode(int(stored))
        mode = self.detect_operation_mode(access_point)
        await self.store.set(_mode_key(access_point.mac), str(int(mode)))
        logger.info("Access point %s runs as %s", access_point.mac, mode.name)
        return mode

    async def adopt(self, access_point: AccessPoint, schedule: bool = True) -> ManagedAccessPoint:
        """Start managing ``access_point``: client, tracker, capabilities and poll cycles.

        With ``schedule=False`` nothing is polled until asked, as for one-shot CLI commands.
        """
        if access_point.mac in self.devices:
            return self.devices[access_point.mac]

        mode = await self._resolve_mode(access_point)
        access_point = access_point.model_copy(update={"operation_mode": mode})
        client = self._client_factory(_ap_url(self.settings.router_url, access_point.ip))
        capabilities = MemoryCapabilitySink()
        tracker = DeviceStateTracker(
            access_point,
            client,
            self.event_bus,
            capabilities,
            mode=mode,
            traffic_sample_delay=self.settings.traffic_sample_delay,
            filter_clients=True,
            vendors=self.vendors,
        )
        managed = ManagedAccessPoint(access_point, client, tracker, capabilities)
        self.devices[access_point.mac] = managed

        await sync_capabilities(capabilities, capabilities_for(mode), self.settings.capability_settle_delay)
        if isinstance(self.store, RouterDatabase):
            await self.store.upsert_access_point(access_point)
        if schedule:
            self._register_cycles(managed)
        logger.info("Adopted %s (%s)", access_point.display_name, access_point.mac)
        return managed

    def _register_cycles(self, managed: ManagedAccessPoint, start_delay: float | None = 0.0) -> None:
        intervals = self.settings.intervals()
        tracker = managed.tracker
        for category in tracker.categories:

            async def _job(category=category) -> None:
                await tracker.refresh_category(category)

            self.scheduler.register(managed.mac, category.value, intervals[category], _job, start_delay)

    def _register_network_cycle(self, start_delay: float | None = None) -> None:
        self.scheduler.register(
            NETWORK_OWNER,
            NETWORK_CYCLE,
            self.settings.online_devices_interval,
            self.refresh_network,
            start_delay,
        )

    async def start(self, schedule: bool = True) -> None:
        """Discover and adopt every access point, then start network polling."""
        for access_point in await self.discover():
            await self.adopt(access_point, schedule)
        if schedule:
            self._register_network_cycle()

    async def remove_access_point(self, mac: str) -> bool:
        """Stop polling ``mac`` and release its client; timers go first."""
        managed = self.devices.pop(normalize_mac(mac), None)
        if managed is None:
            return False
        await self._quiesce(managed)
        await managed.client.dispose()
        if isinstance(self.store, RouterDatabase):
            await self.store.delete_access_point(managed.mac)
        logger.info("Removed access point %s", managed.mac)
        return True

    async def stop(self) -> None:
        await self.scheduler.stop()
        for managed in self.devices.values():
            await managed.tracker.drain()
            await managed.client.dispose()
        logger.info("Router monitor stopped")

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    async def _quiesce(self, managed: ManagedAccessPoint) -> None:
        """Cancel the timers of ``managed`` and wait for every fetch still running."""
        await self.scheduler.stop(managed.mac)
        await managed.tracker.drain()

    async def apply_settings(self, settings: Settings) -> None:
        """Switch to new settings without a window of stale or duplicate timers.

        A device whose client or categories change is quiesced first, so no
        run is left talking to a disposed client and no new cycle overlaps an
        old run.
        """
        url_changed = _host(settings.router_url) != _host(self.settings.router_url)
        credentials_changed = (
            settings.username != self.settings.username
            or settings.password.get_secret_value() != self.settings.password.get_secret_value()
        )
        replace_clients = url_changed or credentials_changed
        self.settings = settings
        self.scheduler.backoff_factor = settings.backoff_factor
        intervals = {c.value: i for c, i in settings.intervals().items()}

        for managed in self.devices.values():
            registered = {c.name for c in self.scheduler.cycles(managed.mac)}

            if replace_clients:
                await self._quiesce(managed)
                old_client = managed.client
                managed.client = self._client_factory(_ap_url(settings.router_url, managed.access_point.ip))
                managed.tracker.client = managed.client
                await old_client.dispose()

            if url_changed:
                mode = await self._resolve_mode(managed.access_point, redetect=True)
                managed.access_point = managed.access_point.model_copy(update={"operation_mode": mode})
                managed.tracker.set_operation_mode(mode)
                await sync_capabilities(managed.capabilities, capabilities_for(mode), settings.capability_settle_delay)

            if not registered:
                continue
            if replace_clients or registered != {c.value for c in managed.tracker.categories}:
                await self._quiesce(managed)
                self._register_cycles(managed, start_delay=None)
            else:
                self.scheduler.reschedule(managed.mac, intervals)

        if self.scheduler.get(NETWORK_OWNER, NETWORK_CYCLE) is not None:
            self.scheduler.reschedule(NETWORK_OWNER, {NETWORK_CYCLE: settings.online_devices_interval})
        logger.info("Applied new settings")

    # ------------------------------------------------------------------
    # Queries and actions
    # ------------------------------------------------------------------

    def get(self, mac: str) -> ManagedAccessPoint | None:
        return self.devices.get(normalize_mac(mac))

    def _require(self, mac: str) -> ManagedAccessPoint:
        managed = self.get(mac)
        if managed is None:
            raise KeyError(f"Unknown access point {mac}")
        return managed

    async def refresh_network(self) -> list[RouterEvent]:
        return self.network.refresh_from_trackers(t.tracker for t in self.devices.values())

    async def refresh_all(self) -> list[RouterEvent]:
        """Run a full cycle on every tracker, then recompute the network view."""
        events: list[RouterEvent] = []
        managed = list(self.devices.values())
        results = await asyncio.gather(
            *(m.tracker.refresh(raise_on_failure=True) for m in managed), return_exceptions=True
        )
        for device, result in zip(managed, results):
            if isinstance(result, PartialUpdateError):
                logger.warning("%s: %s", device.access_point.display_name, result)
                result = result.result or UpdateResult()
            if isinstance(result, BaseException):
                raise result
            events.extend(result.events)
        events.extend(await self.refresh_network())
        return events

    async def poll_clients(self) -> None:
        """Force a client-list refresh on every tracker and update the network view."""
        for managed in self.devices.values():
            try:
                await managed.tracker.refresh_category(PollCategory.ONLINE_DEVICES)
            except RouterError as exc:
                logger.warning("Forced client poll of %s failed: %s", managed.mac, exc)
        await self.refresh_network()

    async def is_connected(self, mac: str, fresh: bool = False) -> bool:
        if fresh:
            return await self.network.is_connected_fresh(mac, self.poll_clients)
        return self.network.is_connected(mac)

    def is_wan_connected(self, mac: str) -> bool:
        return bool(self._require(mac).tracker.state.snapshot.wan_connected)

    async def reboot(self, mac: str) -> None:
        managed = self._require(mac)
        logger.info("Rebooting access point %s", managed.mac)
        await managed.client.reboot()

    async def set_led(self, mac: str, on: bool) -> None:
        managed = self._require(mac)
        logger.info("Turning LEDs of %s %s", managed.mac, "on" if on else "off")
        await managed.client.set_led(on)


async def _record_history(event_bus: EventBus, db: RouterDatabase) -> None:
    queue = event_bus.subscribe()
    try:
        while True:
            event = await queue.get()
            try:
                await db.add_event(event)
            except Exception as exc:
                logger.error("Failed to record event %s: %s", event.event_type.value, exc)
    finally:
        event_bus.unsubscribe(queue)


async def run_server(
    host: str = "127.0.0.1",
    port: int = 8556,
    with_polling: bool = True,
) -> None:
    """Start the API server, optionally with background polling."""
    import uvicorn

    from routerwatch.api.server import create_app

    settings = get_settings(api_host=host, api_port=port)

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    db = RouterDatabase(settings.resolved_db_path)
    await db.initialize()
    settings = await load_stored_settings(settings, db)

    event_bus = EventBus()
    monitor = RouterMonitor(settings, db, event_bus, vendors=VendorResolver())

    sink: TriggerSink
    if settings.webhook_url:
        sink = WebhookTriggerSink(settings.webhook_url, timeout=settings.request_timeout)
    else:
        sink = LoggingTriggerSink()
    dispatcher = TriggerDispatcher(event_bus, sink)
    await dispatcher.start()
    history_task = asyncio.create_task(_record_history(event_bus, db))

    if with_polling:
        try:
            await monitor.start()
        except RouterError as exc:
            logger.error("Could not reach router at %s: %s", settings.router_url, exc)

    app = create_app(monitor, db, event_bus)

    config = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_level=settings.log_level.lower(),
    )
    server = uvicorn.Server(config)

    try:
        await server.serve()
    finally:
        await monitor.stop()
        await dispatcher.stop()
        history_task.cancel()
        if isinstance(sink, WebhookTriggerSink):
            await sink.close()
        await db.close()
