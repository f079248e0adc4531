"""Pydantic schemas for API request/response models."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from routerwatch.core.models import ConnectedClient, Medium, RouterSnapshot


class ClientResponse(BaseModel):
    mac: str
    ip: str | None = None
    name: str | None = None
    nickname: str | None = None
    vendor: str | None = None
    rssi: int | None = None
    medium: Medium
    access_point: str | None = None
    display_name: str

    @classmethod
    def from_client(cls, client: ConnectedClient) -> ClientResponse:
        return cls(**client.model_dump(), display_name=client.display_name)


class AccessPointSummary(BaseModel):
    mac: str
    ip: str
    display_name: str
    operation_mode: str
    available: bool
    warning: str | None = None
    client_count: int


class AccessPointDetail(AccessPointSummary):
    model: str | None = None
    alias: str | None = None
    firmware: str | None = None
    new_firmware: str | None = None
    snapshot: RouterSnapshot
    capabilities: dict[str, Any] = Field(default_factory=dict)


class LedRequest(BaseModel):
    on: bool


class ActionResponse(BaseModel):
    status: str
    message: str


class ConditionResponse(BaseModel):
    mac: str
    result: bool


class EventResponse(BaseModel):
    event_type: str
    access_point: str | None = None
    medium: str | None = None
    client_mac: str | None = None
    timestamp: str
    tokens: dict[str, Any] = Field(default_factory=dict)


class RefreshResponse(BaseModel):
    status: str
    events: int
