"""Session-authenticated HTTP client for the router's management API.

The router speaks three CGI endpoints:

* ``/login.cgi``   : exchanges base64 credentials for an ``asus_token``
* ``/appGet.cgi``  : answers ``hook=...`` queries with JSON or JS-like text
* ``/applyapp.cgi``: runs actions (reboot, LED) and echoes the service name

The token is sent back as a cookie and renewed transparently once it is older
than the configured expiry window, or when the router rejects it.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import httpx

from routerwatch.core.errors import AuthError, CommandFailure, NetworkError
from routerwatch.core.models import (
    AccessPoint,
    ConnectedClient,
    CpuMemLoad,
    RouterInfo,
    TrafficCounters,
    WanStatus,
)
from routerwatch.core.parsing import (
    parse_access_points,
    parse_client_list,
    parse_cpu_percent,
    parse_memory_percent,
    parse_router_info,
    parse_traffic,
    parse_uptime,
    parse_wan_status,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_USER_AGENT = "asusrouter-Android-DUTUtil-1.0.0.3.58-163"
DEFAULT_SESSION_EXPIRY = 600.0

LOGIN_PATH = "/login.cgi"
APP_GET_PATH = "/appGet.cgi"
APPLY_PATH = "/applyapp.cgi"

# error_status values the router uses for a missing or stale token
_AUTH_ERROR_STATUSES = {"2", "8"}

_ROUTER_INFO_HOOK = (
    "nvram_get(productid);nvram_get(firmver);nvram_get(buildno);"
    "nvram_get(extendno);nvram_get(lan_hwaddr);nvram_get(webs_state_info);"
)


class RouterClient:
    """Async client for one router or access point.

    Each managed access point owns exactly one instance; session state is never
    shared. :meth:`dispose` aborts every in-flight request of the instance.
    """

    def __init__(
        self,
        base_url: str,
        username: str,
        password: str,
        timeout: float = 5.0,
        session_expiry: float = DEFAULT_SESSION_EXPIRY,
        user_agent: str = DEFAULT_USER_AGENT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._username = username
        self._password = password
        self._session_expiry = session_expiry
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            headers={"User-Agent": user_agent},
            transport=transport,
        )
        self._token: str | None = None
        self._session_start: float | None = None
        self._login_lock = asyncio.Lock()
        self._inflight: set[asyncio.Future[httpx.Response]] = set()
        self._disposed = False

    # ------------------------------------------------------------------
    # Session handling
    # ------------------------------------------------------------------

    @property
    def token(self) -> str | None:
        return self._token

    @property
    def disposed(self) -> bool:
        return self._disposed

    def session_valid(self) -> bool:
        """True if a token exists and is younger than the expiry window."""
        if self._token is None or self._session_start is None:
            return False
        return (time.monotonic() - self._session_start) < self._session_expiry

    def invalidate(self) -> None:
        self._token = None
        self._session_start = None

    async def authenticate(self) -> str:
        """Log in and return the new session token."""
        credentials = base64.b64encode(f"{self._username}:{self._password}".encode()).decode()
        response = await self._send(
            LOGIN_PATH,
            data={"login_authorization": credentials},
            authenticated=False,
        )
        try:
            data = response.json()
        except ValueError as exc:
            raise AuthError(f"Login to {self.base_url} returned no JSON") from exc

        token = data.get("asus_token") if isinstance(data, dict) else None
        if not token:
            status = data.get("error_status") if isinstance(data, dict) else None
            raise AuthError(f"Login to {self.base_url} rejected (error_status={status})")

        self._token = token
        self._session_start = time.monotonic()
        logger.debug("Authenticated against %s", self.base_url)
        return token

    async def _ensure_session(self) -> None:
        if self.session_valid():
            return
        async with self._login_lock:
            if not self.session_valid():
                await self.authenticate()

    async def _with_session(self, call: Callable[[], Awaitable[T]]) -> T:
        """Run ``call`` with a valid session; on rejection re-auth and retry once."""
        await self._ensure_session()
        try:
            return await call()
        except AuthError:
            logger.info("Session rejected by %s, re-authenticating", self.base_url)
            self.invalidate()
            await self._ensure_session()
            return await call()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _send(
        self,
        path: str,
        data: dict[str, str],
        authenticated: bool = True,
    ) -> httpx.Response:
        if self._disposed:
            raise NetworkError(f"Client for {self.base_url} has been disposed")

        headers = {"Content-Type": "application/x-www-form-urlencoded"}
        if authenticated and self._token:
            headers["Cookie"] = f"asus_token={self._token}"

        request = asyncio.ensure_future(self._client.post(path, data=data, headers=headers))
        self._inflight.add(request)
        try:
            response = await request
        except asyncio.CancelledError:
            if self._disposed:
                raise NetworkError(f"Request to {path} aborted: client disposed") from None
            raise
        except httpx.TimeoutException as exc:
            raise NetworkError(f"Timeout talking to {self.base_url}{path}") from exc
        except httpx.HTTPError as exc:
            raise NetworkError(f"Connection error talking to {self.base_url}{path}: {exc}") from exc
        finally:
            self._inflight.discard(request)

        if response.status_code in (401, 403):
            raise AuthError(f"{path} answered HTTP {response.status_code}")
        if response.status_code >= 400:
            raise NetworkError(f"{path} answered HTTP {response.status_code}")
        return response

    @staticmethod
    def _decode(response: httpx.Response) -> Any:
        try:
            data = response.json()
        except ValueError:
            return response.text
        if isinstance(data, dict) and str(data.get("error_status", "")) in _AUTH_ERROR_STATUSES:
            raise AuthError(f"Router rejected the session (error_status={data['error_status']})")
        return data

    async def query(self, hook: str) -> Any:
        """Issue an appGet hook query and return the decoded body."""

        async def _call() -> Any:
            response = await self._send(APP_GET_PATH, data={"hook": hook})
            return self._decode(response)

        return await self._with_session(_call)

    async def apply(self, payload: dict[str, str]) -> dict[str, Any]:
        """Run an applyapp action and return the router's answer."""

        async def _call() -> dict[str, Any]:
            response = await self._send(APPLY_PATH, data=payload)
            data = self._decode(response)
            return data if isinstance(data, dict) else {}

        return await self._with_session(_call)

    async def dispose(self) -> None:
        """Abort all in-flight requests and release the HTTP client."""
        self._disposed = True
        for request in list(self._inflight):
            request.cancel()
        self._inflight.clear()
        self.invalidate()
        await self._client.aclose()
        logger.debug("Client for %s disposed", self.base_url)

    # ------------------------------------------------------------------
    # Typed queries
    # ------------------------------------------------------------------

    async def get_wan_status(self) -> WanStatus:
        return parse_wan_status(await self.query("wanlink()"))

    async def get_online_clients(self, access_point: str | None = None) -> list[ConnectedClient]:
        return parse_client_list(await self.query("get_clientlist()"), access_point)

    async def get_cpu_usage(self) -> float:
        return parse_cpu_percent(await self.query("cpu_usage(appobj)"))

    async def get_memory_usage(self) -> float:
        return parse_memory_percent(await self.query("memory_usage(appobj)"))

    async def get_cpu_mem_load(self) -> CpuMemLoad:
        return CpuMemLoad(
            cpu_percent=await self.get_cpu_usage(),
            memory_percent=await self.get_memory_usage(),
        )

    async def get_uptime(self) -> int:
        """Seconds since the router booted."""
        return parse_uptime(await self.query("uptime()"))

    async def get_traffic(self) -> TrafficCounters:
        return parse_traffic(await self.query("netdev(appobj)"))

    async def get_router_info(self) -> RouterInfo:
        return parse_router_info(await self.query(_ROUTER_INFO_HOOK))

    async def get_access_points(self) -> list[AccessPoint]:
        return parse_access_points(await self.query("get_cfg_clientlist()"))

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def _run_service(self, command: str, service: str, extra: dict[str, str] | None = None) -> None:
        payload = {"action_mode": "apply", "rc_service": service, **(extra or {})}
        result = await self.apply(payload)
        if result.get("run_service") != service:
            raise CommandFailure(command, service, result.get("run_service"))
        logger.info("%s accepted by %s", command, self.base_url)

    async def reboot(self) -> None:
        await self._run_service("reboot", "reboot")

    async def set_led(self, on: bool) -> None:
        await self._run_service("set_led", "start_ctrl_led", {"led_val": "1" if on else "0"})
