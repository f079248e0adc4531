"""Tests for RouterMonitor: discovery, adoption, polling wiring and actions."""

from __future__ import annotations

import asyncio

import pytest
from conftest import ROUTER_MAC, FakeClientFactory, FakeRouterClient, make_client
from pydantic import SecretStr

from routerwatch.config import get_settings
from routerwatch.core import capabilities as caps
from routerwatch.core.db import RouterDatabase
from routerwatch.core.errors import NetworkError, RouterError
from routerwatch.core.models import AccessPoint, EventType, Medium, OperationMode, PollCategory
from routerwatch.core.sinks import MemorySettingsStore
from routerwatch.main import NETWORK_CYCLE, NETWORK_OWNER, RouterMonitor, load_stored_settings

NODE_MAC = "04:D4:C4:00:00:02"


def _types(events):
    return [e.event_type for e in events]


async def _settle(monitor: RouterMonitor) -> None:
    """Let the first scheduled runs fire and finish."""
    await asyncio.sleep(0.01)
    for cycle in monitor.scheduler.cycles(ROUTER_MAC):
        await cycle.drain()


def _hold_uptime(client: FakeRouterClient) -> tuple[asyncio.Event, list[bool]]:
    """Make the next uptime fetches block until the returned event is set."""
    gate = asyncio.Event()
    started: list[bool] = []
    fetch = client.get_uptime

    async def held() -> int:
        started.append(True)
        await gate.wait()
        if client.disposed:
            raise NetworkError("client disposed")
        return await fetch()

    client.get_uptime = held
    return gate, started


class TestDiscovery:
    async def test_mesh_listing(self, monitor: RouterMonitor, client_factory: FakeClientFactory):
        access_points = await monitor.discover()
        assert [ap.mac for ap in access_points] == [ROUTER_MAC]
        assert access_points[0].alias == "Living room"
        url, client = client_factory.created[0]
        assert url == "http://192.168.1.1"
        assert client.disposed

    async def test_falls_back_to_router_info(self, monitor: RouterMonitor, client_factory: FakeClientFactory):
        client_factory.failing = {"access_points"}
        access_points = await monitor.discover()
        assert len(access_points) == 1
        assert access_points[0].mac == ROUTER_MAC
        assert access_points[0].ip == "192.168.1.1"
        assert access_points[0].model == "RT-AX88U"

    async def test_unreachable_router(self, monitor: RouterMonitor, client_factory: FakeClientFactory):
        client_factory.failing = {"access_points", "firmware"}
        with pytest.raises(NetworkError):
            await monitor.discover()


class TestAdoption:
    async def test_main_router_is_router(self, monitor: RouterMonitor, settings_store: MemorySettingsStore):
        managed = await monitor.adopt(AccessPoint(mac=ROUTER_MAC, ip="192.168.1.1"), schedule=False)
        assert managed.tracker.mode is OperationMode.ROUTER
        assert managed.access_point.operation_mode is OperationMode.ROUTER
        assert set(await managed.capabilities.list_capabilities()) == set(caps.ROUTER_CAPABILITIES)
        assert await settings_store.get(f"operation_mode:{ROUTER_MAC}") == "0"

    async def test_other_node_is_access_point(self, monitor: RouterMonitor, client_factory: FakeClientFactory):
        managed = await monitor.adopt(AccessPoint(mac=NODE_MAC, ip="192.168.1.2"), schedule=False)
        assert managed.tracker.mode is OperationMode.ACCESS_POINT
        assert PollCategory.WAN_STATUS not in managed.tracker.categories
        assert caps.EXTERNAL_IP not in await managed.capabilities.list_capabilities()
        assert client_factory.created[-1][0] == "http://192.168.1.2"

    async def test_stored_mode_wins(self, monitor: RouterMonitor, settings_store: MemorySettingsStore):
        await settings_store.set(f"operation_mode:{ROUTER_MAC}", "1")
        managed = await monitor.adopt(AccessPoint(mac=ROUTER_MAC, ip="192.168.1.1"), schedule=False)
        assert managed.tracker.mode is OperationMode.ACCESS_POINT

    async def test_adopting_twice_returns_same_device(self, monitor: RouterMonitor):
        first = await monitor.adopt(AccessPoint(mac=ROUTER_MAC, ip="192.168.1.1"), schedule=False)
        second = await monitor.adopt(AccessPoint(mac=ROUTER_MAC.lower(), ip="192.168.1.1"), schedule=False)
        assert first is second

    async def test_start_registers_cycles(self, monitor: RouterMonitor):
        await monitor.start()
        assert {c.name for c in monitor.scheduler.cycles(ROUTER_MAC)} == {c.value for c in PollCategory}
        assert monitor.scheduler.get(NETWORK_OWNER, NETWORK_CYCLE) is not None

    async def test_adoption_is_persisted(self, settings, event_bus, client_factory, tmp_path):
        db = RouterDatabase(tmp_path / "routerwatch.db")
        await db.initialize()
        monitor = RouterMonitor(settings, db, event_bus, client_factory=client_factory)
        await monitor.start(schedule=False)
        stored = await db.get_access_point(ROUTER_MAC)
        assert stored is not None
        assert stored.operation_mode is OperationMode.ROUTER

        assert await monitor.remove_access_point(ROUTER_MAC)
        assert await db.get_access_point(ROUTER_MAC) is None
        await monitor.stop()
        await db.close()


class TestRemoval:
    async def test_remove_stops_cycles_then_disposes(self, monitor: RouterMonitor):
        await monitor.start()
        client = monitor.get(ROUTER_MAC).client
        assert await monitor.remove_access_point(ROUTER_MAC)
        assert monitor.scheduler.cycles(ROUTER_MAC) == []
        assert client.disposed
        assert monitor.get(ROUTER_MAC) is None

    async def test_remove_unknown(self, monitor: RouterMonitor):
        assert not await monitor.remove_access_point(NODE_MAC)


class TestRefresh:
    async def test_full_refresh_and_network_events(self, monitor: RouterMonitor):
        await monitor.start(schedule=False)
        assert await monitor.refresh_all() == []

        client = monitor.get(ROUTER_MAC).client
        client.clients = [make_client("AA:BB:CC:11:22:33", Medium.WIFI_5, name="phone")]
        events = await monitor.refresh_all()

        assert EventType.DEVICE_CONNECTED in _types(events)
        assert EventType.DEVICE_5G_CONNECTED in _types(events)
        assert EventType.NETWORK_DEVICE_CONNECTED in _types(events)
        assert await monitor.is_connected("aa:bb:cc:11:22:33")
        assert monitor.is_wan_connected(ROUTER_MAC)

    async def test_partial_failure_keeps_going(self, monitor: RouterMonitor):
        await monitor.start(schedule=False)
        managed = monitor.get(ROUTER_MAC)
        managed.client.failing = {"cpu"}
        await monitor.refresh_all()
        assert managed.tracker.warning is not None
        assert "CPU usage" in managed.tracker.warning
        assert managed.tracker.state.snapshot.uptime_seconds == 86400

    async def test_fresh_membership_query_polls(self, monitor: RouterMonitor):
        await monitor.start(schedule=False)
        await monitor.refresh_all()
        client = monitor.get(ROUTER_MAC).client
        client.clients = [make_client("AA:BB:CC:11:22:33")]
        assert not await monitor.is_connected("AA:BB:CC:11:22:33")
        assert await monitor.is_connected("AA:BB:CC:11:22:33", fresh=True)

    async def test_poll_clients_tolerates_failures(self, monitor: RouterMonitor):
        await monitor.start(schedule=False)
        monitor.get(ROUTER_MAC).client.failing = {"clients"}
        await monitor.poll_clients()
        assert not monitor.network.populated

    async def test_forced_client_poll_joins_running_poll(self, monitor: RouterMonitor, event_bus):
        await monitor.start(schedule=False)
        await monitor.refresh_all()
        managed = monitor.get(ROUTER_MAC)
        client = managed.client
        gate = asyncio.Event()
        fetched = []

        async def slow_clients(access_point=None):
            snapshot = list(client.clients)
            fetched.append(snapshot)
            await gate.wait()
            return snapshot

        client.get_online_clients = slow_clients
        queue = event_bus.subscribe()
        scheduled = asyncio.create_task(managed.tracker.refresh_category(PollCategory.ONLINE_DEVICES))
        while not fetched:
            await asyncio.sleep(0)

        client.clients = [make_client("AA:BB:CC:11:22:33", Medium.WIFI_5)]
        forced = asyncio.create_task(monitor.poll_clients())
        for _ in range(5):
            await asyncio.sleep(0)
        gate.set()
        await scheduled
        await forced

        assert len(fetched) == 1
        assert queue.empty()
        assert not managed.tracker.clients


class TestSettings:
    async def test_interval_change_reschedules(self, monitor: RouterMonitor, settings):
        await monitor.start()
        old = monitor.scheduler.get(ROUTER_MAC, PollCategory.CPU_USAGE.value)
        await monitor.apply_settings(settings.model_copy(update={"cpu_interval": 30.0}))
        new = monitor.scheduler.get(ROUTER_MAC, PollCategory.CPU_USAGE.value)
        assert new is not old
        assert new.interval == 30
        assert not old.scheduled
        assert len(monitor.scheduler.cycles(ROUTER_MAC)) == len(PollCategory)

    async def test_url_change_redetects_mode(self, monitor: RouterMonitor, settings, settings_store):
        await monitor.start()
        managed = monitor.get(ROUTER_MAC)
        old_client = managed.client
        await monitor.apply_settings(settings.model_copy(update={"router_url": "http://192.168.1.2"}))

        assert old_client.disposed
        assert managed.client is not old_client
        assert managed.tracker.client is managed.client
        assert managed.tracker.mode is OperationMode.ACCESS_POINT
        assert await settings_store.get(f"operation_mode:{ROUTER_MAC}") == "1"
        assert {c.name for c in monitor.scheduler.cycles(ROUTER_MAC)} == {
            c.value for c in caps.categories_for(OperationMode.ACCESS_POINT)
        }
        assert caps.EXTERNAL_IP not in await managed.capabilities.list_capabilities()

    async def test_credential_change_waits_for_running_poll(self, monitor: RouterMonitor, settings):
        await monitor.start()
        await _settle(monitor)
        managed = monitor.get(ROUTER_MAC)
        old_client = managed.client
        gate, started = _hold_uptime(old_client)

        running = asyncio.create_task(monitor.scheduler.run_now(ROUTER_MAC, PollCategory.UPTIME.value))
        while not started:
            await asyncio.sleep(0)
        applying = asyncio.create_task(
            monitor.apply_settings(settings.model_copy(update={"password": SecretStr("changed")}))
        )
        for _ in range(5):
            await asyncio.sleep(0)
        assert not old_client.disposed

        gate.set()
        assert await running
        await applying
        assert managed.tracker.warning is None
        assert old_client.disposed
        assert managed.client is not old_client
        assert managed.tracker.client is managed.client
        assert len(monitor.scheduler.cycles(ROUTER_MAC)) == len(PollCategory)

    async def test_mode_switch_does_not_overlap_running_poll(self, monitor: RouterMonitor, settings):
        await monitor.start()
        await _settle(monitor)
        managed = monitor.get(ROUTER_MAC)
        old_client = managed.client
        old_cycle = monitor.scheduler.get(ROUTER_MAC, PollCategory.UPTIME.value)
        gate, started = _hold_uptime(old_client)

        running = asyncio.create_task(monitor.scheduler.run_now(ROUTER_MAC, PollCategory.UPTIME.value))
        while not started:
            await asyncio.sleep(0)
        applying = asyncio.create_task(
            monitor.apply_settings(settings.model_copy(update={"router_url": "http://192.168.1.2"}))
        )
        for _ in range(5):
            await asyncio.sleep(0)
        gate.set()
        await running
        await applying

        assert managed.tracker.mode is OperationMode.ACCESS_POINT
        assert len(started) == 1
        assert "uptime" not in managed.client.calls
        assert managed.tracker.warning is None
        cycles = monitor.scheduler.cycles(ROUTER_MAC)
        assert {c.name for c in cycles} == {c.value for c in caps.categories_for(OperationMode.ACCESS_POINT)}
        assert all(c.scheduled and not c.in_flight for c in cycles)
        assert monitor.scheduler.get(ROUTER_MAC, PollCategory.UPTIME.value) is not old_cycle
        assert monitor.scheduler._draining == []


class TestActions:
    async def test_reboot_and_led(self, monitor: RouterMonitor):
        await monitor.start(schedule=False)
        await monitor.reboot(ROUTER_MAC)
        await monitor.set_led(ROUTER_MAC, False)
        assert monitor.get(ROUTER_MAC).client.calls[-2:] == ["reboot", "led"]

    async def test_unknown_access_point(self, monitor: RouterMonitor):
        with pytest.raises(KeyError):
            await monitor.reboot(NODE_MAC)

    async def test_router_errors_propagate(self, monitor: RouterMonitor):
        await monitor.start(schedule=False)
        monitor.get(ROUTER_MAC).client.failing = {"led"}
        with pytest.raises(RouterError):
            await monitor.set_led(ROUTER_MAC, True)


async def test_stored_router_address_is_used(settings_store: MemorySettingsStore):
    await settings_store.set("router_url", "http://192.168.50.1")
    await settings_store.set("username", "stored-admin")

    loaded = await load_stored_settings(get_settings(), settings_store)
    assert loaded.router_url == "http://192.168.50.1"
    assert loaded.username == "stored-admin"

    explicit = await load_stored_settings(get_settings(router_url="http://10.0.0.1"), settings_store)
    assert explicit.router_url == "http://10.0.0.1"
    assert explicit.username == "stored-admin"
