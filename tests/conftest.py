"""Shared fixtures: a fake router behind httpx.MockTransport and a fake client for trackers."""

from __future__ import annotations

import base64
import json
from typing import Any
from urllib.parse import parse_qs

import httpx
import pytest

from routerwatch import config
from routerwatch.config import Settings, get_settings
from routerwatch.core.client import RouterClient
from routerwatch.core.errors import NetworkError
from routerwatch.core.events import EventBus
from routerwatch.core.models import (
    AccessPoint,
    ConnectedClient,
    Medium,
    RouterInfo,
    TrafficCounters,
    WanStatus,
)
from routerwatch.core.sinks import MemoryCapabilitySink, MemorySettingsStore
from routerwatch.main import RouterMonitor

ROUTER_MAC = "04:D4:C4:00:00:01"


def wanlink_body(status: int = 1, ip: str = "203.0.113.7", link_type: str = "dhcp") -> str:
    return (
        f"function wanlink_status() {{ return {status};}}\n"
        f"function wanlink_statusstr() {{ return 'Connected';}}\n"
        f"function wanlink_type() {{ return '{link_type}';}}\n"
        f"function wanlink_ipaddr() {{ return '{ip}';}}\n"
    )


def clientlist_body(*clients: dict[str, Any]) -> str:
    data: dict[str, Any] = {"maclist": [c["mac"] for c in clients]}
    for c in clients:
        data[c["mac"]] = {"isOnline": "1", "isWL": "0", **c}
    return json.dumps({"get_clientlist": data})


class FakeRouter:
    """Minimal router emulation for the three CGI endpoints."""

    def __init__(self, username: str = "admin", password: str = "secret") -> None:
        self.username = username
        self.password = password
        self.hooks: dict[str, Any] = {}
        self.apply_response: dict[str, Any] | None = None
        self.logins = 0
        self.requests: list[tuple[str, dict[str, str], str | None]] = []
        self.valid_tokens: set[str] = set()
        self.reject_next = 0

    def _token_from(self, request: httpx.Request) -> str | None:
        cookie = request.headers.get("cookie", "")
        for part in cookie.split(";"):
            key, _, value = part.strip().partition("=")
            if key == "asus_token":
                return value
        return None

    def handler(self, request: httpx.Request) -> httpx.Response:
        form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
        token = self._token_from(request)
        self.requests.append((request.url.path, form, token))

        if request.url.path == "/login.cgi":
            expected = base64.b64encode(f"{self.username}:{self.password}".encode()).decode()
            if form.get("login_authorization") != expected:
                return httpx.Response(200, json={"error_status": "3"})
            self.logins += 1
            new_token = f"token-{self.logins}"
            self.valid_tokens.add(new_token)
            return httpx.Response(200, json={"asus_token": new_token})

        if token not in self.valid_tokens:
            return httpx.Response(200, json={"error_status": "2"})
        if self.reject_next:
            self.reject_next -= 1
            self.valid_tokens.discard(token)
            return httpx.Response(200, json={"error_status": "8"})

        if request.url.path == "/appGet.cgi":
            body = self.hooks.get(form.get("hook", ""))
            if body is None:
                return httpx.Response(404)
            if callable(body):
                body = body()
            if isinstance(body, (dict, list)):
                return httpx.Response(200, json=body)
            return httpx.Response(200, text=body)

        if request.url.path == "/applyapp.cgi":
            if self.apply_response is not None:
                return httpx.Response(200, json=self.apply_response)
            return httpx.Response(200, json={"modify": "0", "run_service": form.get("rc_service")})

        return httpx.Response(404)

    def client(self, base_url: str = "http://192.168.1.1", **kwargs: Any) -> RouterClient:
        kwargs.setdefault("transport", httpx.MockTransport(self.handler))
        return RouterClient(base_url, self.username, self.password, **kwargs)


class FakeRouterClient:
    """Duck-typed stand-in for RouterClient used by tracker tests.

    Each value can be replaced between polls; categories listed in ``failing``
    raise NetworkError.
    """

    def __init__(self) -> None:
        self.clients: list[ConnectedClient] = []
        self.wan = WanStatus(connected=True, external_ip="203.0.113.7", link_type="dhcp")
        self.cpu = 12.5
        self.memory = 40.0
        self.uptime = 86400
        self.traffic: list[TrafficCounters] = [TrafficCounters(), TrafficCounters()]
        self.info = RouterInfo(product_id="RT-AX88U", mac=ROUTER_MAC, firmware="3.0.0.4.388_1")
        self.failing: set[str] = set()
        self.calls: list[str] = []
        self.disposed = False

    def _check(self, name: str) -> None:
        self.calls.append(name)
        if name in self.failing:
            raise NetworkError(f"{name} unreachable")

    async def get_online_clients(self, access_point: str | None = None) -> list[ConnectedClient]:
        self._check("clients")
        return list(self.clients)

    async def get_wan_status(self) -> WanStatus:
        self._check("wan")
        return self.wan

    async def get_cpu_usage(self) -> float:
        self._check("cpu")
        return self.cpu

    async def get_memory_usage(self) -> float:
        self._check("memory")
        return self.memory

    async def get_uptime(self) -> int:
        self._check("uptime")
        return self.uptime

    async def get_traffic(self) -> TrafficCounters:
        self._check("traffic")
        return self.traffic.pop(0) if len(self.traffic) > 1 else self.traffic[0]

    async def get_router_info(self) -> RouterInfo:
        self._check("firmware")
        return self.info

    async def get_access_points(self) -> list[AccessPoint]:
        self._check("access_points")
        return [AccessPoint(mac=ROUTER_MAC, ip="192.168.1.1", model="RT-AX88U", alias="Living room")]

    async def reboot(self) -> None:
        self._check("reboot")

    async def set_led(self, on: bool) -> None:
        self._check("led")

    async def dispose(self) -> None:
        self.disposed = True


def make_client(mac: str, medium: Medium = Medium.WIRED, **kwargs: Any) -> ConnectedClient:
    return ConnectedClient(mac=mac, medium=medium, **kwargs)


@pytest.fixture
def fake_router() -> FakeRouter:
    return FakeRouter()


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def capability_sink() -> MemoryCapabilitySink:
    return MemoryCapabilitySink()


@pytest.fixture
def fake_client() -> FakeRouterClient:
    return FakeRouterClient()


class FakeClientFactory:
    """Client factory for RouterMonitor that hands out FakeRouterClients."""

    def __init__(self) -> None:
        self.created: list[tuple[str, FakeRouterClient]] = []
        self.failing: set[str] = set()

    def __call__(self, base_url: str) -> FakeRouterClient:
        client = FakeRouterClient()
        client.failing = set(self.failing)
        self.created.append((base_url, client))
        return client


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch, tmp_path):
    """Keep user config files and the real home directory out of every test."""
    monkeypatch.setattr(config, "_load_yaml_config", lambda: {})
    monkeypatch.setenv("HOME", str(tmp_path))


@pytest.fixture
def settings() -> Settings:
    return get_settings(password="secret", traffic_sample_delay=0, capability_settle_delay=0)


@pytest.fixture
def settings_store() -> MemorySettingsStore:
    return MemorySettingsStore()


@pytest.fixture
def client_factory() -> FakeClientFactory:
    return FakeClientFactory()


@pytest.fixture
async def monitor(settings, settings_store, event_bus, client_factory):
    router_monitor = RouterMonitor(settings, settings_store, event_bus, client_factory=client_factory)
    yield router_monitor
    await router_monitor.stop()
