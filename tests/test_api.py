"""Tests for the REST API."""

from __future__ import annotations

import json

import httpx
import pytest
from conftest import ROUTER_MAC, FakeClientFactory, make_client
from fastapi.testclient import TestClient

from routerwatch.api.server import create_app
from routerwatch.api.websocket import serialize_event
from routerwatch.core.errors import CommandFailure
from routerwatch.core.events import EventBus
from routerwatch.core.models import EventType, Medium, RouterEvent
from routerwatch.core.sinks import MemorySettingsStore
from routerwatch.main import RouterMonitor

PHONE_MAC = "AA:BB:CC:11:22:33"


@pytest.fixture
async def api(monitor: RouterMonitor):
    await monitor.start(schedule=False)
    app = create_app(monitor, None, monitor.event_bus)
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        yield client


async def _connect_phone(api: httpx.AsyncClient, monitor: RouterMonitor) -> None:
    await api.post("/api/refresh")
    monitor.get(ROUTER_MAC).client.clients = [make_client(PHONE_MAC, Medium.WIFI_5, name="phone")]
    await api.post("/api/refresh")


async def test_list_access_points(api: httpx.AsyncClient):
    response = await api.get("/api/access-points")
    assert response.status_code == 200
    data = response.json()
    assert len(data) == 1
    assert data[0]["mac"] == ROUTER_MAC
    assert data[0]["operation_mode"] == "router"
    assert data[0]["display_name"] == "RT-AX88U Living room"
    assert data[0]["available"] is True
    assert data[0]["client_count"] == 0


async def test_access_point_detail(api: httpx.AsyncClient):
    await api.post("/api/refresh")
    response = await api.get(f"/api/access-points/{ROUTER_MAC.lower()}")
    assert response.status_code == 200
    data = response.json()
    assert data["snapshot"]["cpu_percent"] == 12.5
    assert data["capabilities"]["meter_cpu_usage"] == 12.5
    assert data["capabilities"]["uptime_days"] == 1.0
    assert data["firmware"] == "3.0.0.4.388_1"


async def test_unknown_access_point(api: httpx.AsyncClient):
    assert (await api.get("/api/access-points/00:11:22:33:44:55")).status_code == 404
    assert (await api.post("/api/access-points/00:11:22:33:44:55/reboot")).status_code == 404


async def test_clients_and_network(api: httpx.AsyncClient, monitor: RouterMonitor):
    await _connect_phone(api, monitor)

    per_medium = await api.get(f"/api/access-points/{ROUTER_MAC}/clients", params={"medium": "5GHz"})
    assert [c["mac"] for c in per_medium.json()] == [PHONE_MAC]
    wired = await api.get(f"/api/access-points/{ROUTER_MAC}/clients", params={"medium": "wired"})
    assert wired.json() == []

    network = await api.get("/api/network/clients")
    assert network.json()[0]["display_name"] == "phone"

    condition = await api.get(f"/api/network/clients/{PHONE_MAC.lower()}")
    assert condition.json() == {"mac": PHONE_MAC, "result": True}


async def test_events(api: httpx.AsyncClient, monitor: RouterMonitor):
    await _connect_phone(api, monitor)
    response = await api.get("/api/events", params={"limit": 10})
    event_types = [e["event_type"] for e in response.json()]
    assert "device-connected-to-network" in event_types
    assert "5g-device-connected-to-access-point" in event_types


async def test_wan_condition(api: httpx.AsyncClient):
    before = await api.get(f"/api/conditions/wan-connected/{ROUTER_MAC}")
    assert before.json()["result"] is False
    await api.post("/api/refresh")
    after = await api.get(f"/api/conditions/wan-connected/{ROUTER_MAC}")
    assert after.json()["result"] is True


async def test_actions(api: httpx.AsyncClient, monitor: RouterMonitor):
    assert (await api.post(f"/api/access-points/{ROUTER_MAC}/reboot")).status_code == 200
    response = await api.post(f"/api/access-points/{ROUTER_MAC}/led", json={"on": False})
    assert response.status_code == 200
    assert response.json()["message"].endswith("off")


async def test_action_failures(api: httpx.AsyncClient, monitor: RouterMonitor):
    client = monitor.get(ROUTER_MAC).client

    async def rejected() -> None:
        raise CommandFailure("reboot", "reboot", "")

    client.reboot = rejected
    assert (await api.post(f"/api/access-points/{ROUTER_MAC}/reboot")).status_code == 502

    client.failing = {"led"}
    response = await api.post(f"/api/access-points/{ROUTER_MAC}/led", json={"on": True})
    assert response.status_code == 503


def test_websocket_ping(settings):
    monitor = RouterMonitor(settings, MemorySettingsStore(), EventBus(), client_factory=FakeClientFactory())
    app = create_app(monitor, None, monitor.event_bus)
    with TestClient(app) as client:
        with client.websocket_connect("/ws/events") as ws:
            ws.send_text("ping")
            assert ws.receive_text() == "pong"


def test_serialize_event():
    phone = make_client(PHONE_MAC, Medium.WIFI_2_4, nickname="Kitchen tablet")
    event = RouterEvent(
        event_type=EventType.DEVICE_24G_CONNECTED,
        access_point=ROUTER_MAC,
        medium=Medium.WIFI_2_4,
        client=phone,
        tokens=phone.tokens(),
    )
    data = json.loads(serialize_event(event))
    assert data["event"] == "24g-device-connected-to-access-point"
    assert data["medium"] == "2.4GHz"
    assert data["client"]["display_name"] == "Kitchen tablet"
    assert data["tokens"]["nickname"] == "Kitchen tablet"
