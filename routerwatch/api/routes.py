"""REST API route definitions."""

from __future__ import annotations

from fastapi import APIRouter, HTTPException, Query

from routerwatch.api.schemas import (
    AccessPointDetail,
    AccessPointSummary,
    ActionResponse,
    ClientResponse,
    ConditionResponse,
    EventResponse,
    LedRequest,
    RefreshResponse,
)
from routerwatch.core.db import RouterDatabase
from routerwatch.core.errors import CommandFailure, RouterError
from routerwatch.core.events import EventBus
from routerwatch.core.models import Medium, RouterEvent, normalize_mac
from routerwatch.main import ManagedAccessPoint, RouterMonitor


def _summary(managed: ManagedAccessPoint) -> AccessPointSummary:
    ap = managed.access_point
    return AccessPointSummary(
        mac=ap.mac,
        ip=ap.ip,
        display_name=ap.display_name,
        operation_mode=managed.tracker.mode.name.lower(),
        available=managed.tracker.available,
        warning=managed.tracker.warning,
        client_count=len(managed.tracker.clients),
    )


def _event_to_response(event: RouterEvent) -> EventResponse:
    return EventResponse(
        event_type=event.event_type.value,
        access_point=event.access_point,
        medium=event.medium.value if event.medium else None,
        client_mac=event.client.mac if event.client else None,
        timestamp=event.timestamp.isoformat(),
        tokens=event.tokens,
    )


def create_routes(
    monitor: RouterMonitor,
    db: RouterDatabase | None,
    event_bus: EventBus,
) -> APIRouter:
    """Create the API router with injected dependencies."""
    router = APIRouter(prefix="/api")

    def _managed(mac: str) -> ManagedAccessPoint:
        managed = monitor.get(mac)
        if managed is None:
            raise HTTPException(status_code=404, detail="Access point not found")
        return managed

    @router.get("/access-points", response_model=list[AccessPointSummary])
    async def list_access_points() -> list[AccessPointSummary]:
        return [_summary(m) for m in monitor.devices.values()]

    @router.get("/access-points/{mac}", response_model=AccessPointDetail)
    async def get_access_point(mac: str) -> AccessPointDetail:
        managed = _managed(mac)
        ap = managed.tracker.access_point
        return AccessPointDetail(
            **_summary(managed).model_dump(),
            model=ap.model,
            alias=ap.alias,
            firmware=ap.firmware,
            new_firmware=ap.new_firmware,
            snapshot=managed.tracker.state.snapshot,
            capabilities=managed.capabilities.values(),
        )

    @router.get("/access-points/{mac}/clients", response_model=list[ClientResponse])
    async def list_access_point_clients(
        mac: str,
        medium: Medium | None = Query(None, description="Only clients on this medium"),
    ) -> list[ClientResponse]:
        tracker = _managed(mac).tracker
        clients = tracker.clients_on(medium) if medium else tracker.clients
        return [ClientResponse.from_client(c) for c in clients]

    @router.post("/access-points/{mac}/reboot", response_model=ActionResponse)
    async def reboot(mac: str) -> ActionResponse:
        managed = _managed(mac)
        try:
            await monitor.reboot(managed.mac)
        except CommandFailure as exc:
            raise HTTPException(status_code=502, detail=str(exc))
        except RouterError as exc:
            raise HTTPException(status_code=503, detail=str(exc))
        return ActionResponse(status="ok", message=f"Reboot of {managed.mac} requested")

    @router.post("/access-points/{mac}/led", response_model=ActionResponse)
    async def set_led(mac: str, body: LedRequest) -> ActionResponse:
        managed = _managed(mac)
        try:
            await monitor.set_led(managed.mac, body.on)
        except CommandFailure as exc:
            raise HTTPException(status_code=502, detail=str(exc))
        except RouterError as exc:
            raise HTTPException(status_code=503, detail=str(exc))
        return ActionResponse(status="ok", message=f"LEDs of {managed.mac} turned {'on' if body.on else 'off'}")

    @router.get("/network/clients", response_model=list[ClientResponse])
    async def list_network_clients() -> list[ClientResponse]:
        return [ClientResponse.from_client(c) for c in monitor.network.clients]

    @router.get("/network/clients/{mac}", response_model=ConditionResponse)
    async def network_client_connected(
        mac: str,
        fresh: bool = Query(False, description="Poll the routers before answering"),
    ) -> ConditionResponse:
        connected = await monitor.is_connected(mac, fresh=fresh)
        return ConditionResponse(mac=normalize_mac(mac), result=connected)

    @router.get("/conditions/wan-connected/{mac}", response_model=ConditionResponse)
    async def wan_connected(mac: str) -> ConditionResponse:
        managed = _managed(mac)
        return ConditionResponse(mac=managed.mac, result=monitor.is_wan_connected(managed.mac))

    @router.post("/refresh", response_model=RefreshResponse)
    async def refresh() -> RefreshResponse:
        events = await monitor.refresh_all()
        return RefreshResponse(status="ok", events=len(events))

    @router.get("/events", response_model=list[EventResponse])
    async def get_recent_events(
        limit: int = Query(100, ge=1, le=500),
        history: bool = Query(False, description="Read from the persisted event history"),
    ) -> list[EventResponse]:
        if history and db is not None:
            rows = await db.get_events(limit=limit)
            return [
                EventResponse(
                    event_type=row["event_type"],
                    access_point=row["access_point"],
                    medium=row["medium"],
                    client_mac=row["client_mac"],
                    timestamp=row["timestamp"],
                    tokens=row["tokens"],
                )
                for row in rows
            ]
        return [_event_to_response(e) for e in event_bus.recent_events[:limit]]

    return router
