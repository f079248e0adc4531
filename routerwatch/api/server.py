"""FastAPI application factory for the RouterWatch API."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from routerwatch.api.routes import create_routes
from routerwatch.api.websocket import WebSocketManager
from routerwatch.core.db import RouterDatabase
from routerwatch.core.events import EventBus
from routerwatch.main import RouterMonitor

logger = logging.getLogger(__name__)


def create_app(
    monitor: RouterMonitor,
    db: RouterDatabase | None,
    event_bus: EventBus,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    ws_manager = WebSocketManager(event_bus)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await ws_manager.start()
        yield
        await ws_manager.stop()

    app = FastAPI(
        title="RouterWatch API",
        description="ASUS router and access point monitoring API",
        version="0.1.0",
        lifespan=lifespan,
    )

    # CORS: allow all origins for local use
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(create_routes(monitor, db, event_bus))

    @app.websocket("/ws/events")
    async def websocket_endpoint(websocket: WebSocket) -> None:
        await ws_manager.connect(websocket)
        try:
            while True:
                # Keep connection alive; handle pings from client
                data = await websocket.receive_text()
                if data == "ping":
                    await websocket.send_text("pong")
        except WebSocketDisconnect:
            ws_manager.disconnect(websocket)

    return app
