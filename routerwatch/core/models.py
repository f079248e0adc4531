"""Router, client and event models and enums for RouterWatch."""

from __future__ import annotations

from datetime import datetime
from enum import Enum, IntEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


def normalize_mac(mac: str) -> str:
    """Normalize a MAC address to uppercase colon-separated format."""
    mac = mac.strip().replace("-", ":").upper()
    parts = mac.split(":")
    return ":".join(p.zfill(2) for p in parts)


def _now() -> datetime:
    return datetime.now().astimezone()


class Medium(str, Enum):
    WIRED = "wired"
    WIFI_2_4 = "2.4GHz"
    WIFI_5 = "5GHz"
    WIFI_6 = "6GHz"


class OperationMode(IntEnum):
    ROUTER = 0
    ACCESS_POINT = 1


class PollCategory(str, Enum):
    ONLINE_DEVICES = "online-devices"
    WAN_STATUS = "wan-status"
    CPU_USAGE = "cpu-usage"
    MEMORY_USAGE = "memory-usage"
    UPTIME = "uptime"
    TRAFFIC = "traffic"
    FIRMWARE = "firmware"

    @property
    def label(self) -> str:
        """Human readable name used in warning messages."""
        return _CATEGORY_LABELS[self]


_CATEGORY_LABELS: dict[PollCategory, str] = {
    PollCategory.ONLINE_DEVICES: "Connected clients",
    PollCategory.WAN_STATUS: "WAN status",
    PollCategory.CPU_USAGE: "CPU usage",
    PollCategory.MEMORY_USAGE: "Memory usage",
    PollCategory.UPTIME: "Uptime",
    PollCategory.TRAFFIC: "Traffic data",
    PollCategory.FIRMWARE: "Firmware",
}


class EventType(str, Enum):
    DEVICE_CONNECTED = "device-connected-to-access-point"
    DEVICE_DISCONNECTED = "device-disconnected-from-access-point"
    WIRED_DEVICE_CONNECTED = "wired-device-connected-to-access-point"
    WIRED_DEVICE_DISCONNECTED = "wired-device-disconnected-from-access-point"
    DEVICE_24G_CONNECTED = "24g-device-connected-to-access-point"
    DEVICE_24G_DISCONNECTED = "24g-device-disconnected-from-access-point"
    DEVICE_5G_CONNECTED = "5g-device-connected-to-access-point"
    DEVICE_5G_DISCONNECTED = "5g-device-disconnected-from-access-point"
    DEVICE_6G_CONNECTED = "6g-device-connected-to-access-point"
    DEVICE_6G_DISCONNECTED = "6g-device-disconnected-from-access-point"
    NETWORK_DEVICE_CONNECTED = "device-connected-to-network"
    NETWORK_DEVICE_DISCONNECTED = "device-disconnected-from-network"
    WAN_CONNECTION_CHANGED = "wan-connection-changed"
    EXTERNAL_IP_CHANGED = "external-ip-changed"
    WAN_TYPE_CHANGED = "wan-type-changed"
    NEW_FIRMWARE_AVAILABLE = "new-firmware-available"


# (connected, disconnected) event types per medium
MEDIUM_EVENTS: dict[Medium, tuple[EventType, EventType]] = {
    Medium.WIRED: (EventType.WIRED_DEVICE_CONNECTED, EventType.WIRED_DEVICE_DISCONNECTED),
    Medium.WIFI_2_4: (EventType.DEVICE_24G_CONNECTED, EventType.DEVICE_24G_DISCONNECTED),
    Medium.WIFI_5: (EventType.DEVICE_5G_CONNECTED, EventType.DEVICE_5G_DISCONNECTED),
    Medium.WIFI_6: (EventType.DEVICE_6G_CONNECTED, EventType.DEVICE_6G_DISCONNECTED),
}


class ConnectedClient(BaseModel):
    """A client seen online on one access point during one poll."""

    model_config = ConfigDict(frozen=True)

    mac: str  # Identity, normalized uppercase colon-separated
    ip: str | None = None
    name: str | None = None
    nickname: str | None = None
    vendor: str | None = None
    rssi: int | None = None
    medium: Medium = Medium.WIRED
    access_point: str | None = None

    @field_validator("mac", "access_point")
    @classmethod
    def _normalize(cls, value: str | None) -> str | None:
        if value is None or value == "":
            return None
        return normalize_mac(value)

    @property
    def display_name(self) -> str:
        """Best available name for display purposes."""
        return self.nickname or self.name or self.vendor or self.mac

    def tokens(self) -> dict[str, Any]:
        """Token payload handed to trigger sinks for connect/disconnect events."""
        return {
            "name": self.name or "",
            "ip": self.ip or "",
            "mac": self.mac,
            "nickname": self.nickname or "",
            "vendor": self.vendor or "",
            "rssi": self.rssi if self.rssi is not None else 0,
        }


class WanStatus(BaseModel):
    model_config = ConfigDict(frozen=True)

    connected: bool = False
    external_ip: str | None = None
    link_type: str | None = None


class TrafficCounters(BaseModel):
    """Cumulative WAN byte counters as reported by the router."""

    model_config = ConfigDict(frozen=True)

    received: int = 0
    sent: int = 0


class CpuMemLoad(BaseModel):
    model_config = ConfigDict(frozen=True)

    cpu_percent: float = Field(0.0, ge=0, le=100)
    memory_percent: float = Field(0.0, ge=0, le=100)


class RouterInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    product_id: str | None = None
    mac: str | None = None
    firmware: str | None = None
    new_firmware: str | None = None


class AccessPoint(BaseModel):
    """A managed router or access point (one node of a flat mesh)."""

    mac: str
    ip: str
    alias: str | None = None
    model: str | None = None
    firmware: str | None = None
    new_firmware: str | None = None
    operation_mode: OperationMode | None = None

    @field_validator("mac")
    @classmethod
    def _normalize(cls, value: str) -> str:
        return normalize_mac(value)

    @property
    def display_name(self) -> str:
        return " ".join(p for p in (self.model, self.alias) if p) or self.mac


class RouterSnapshot(BaseModel):
    """Scalar metrics of one access point as of its latest polls."""

    model_config = ConfigDict(frozen=True)

    wan_connected: bool | None = None
    external_ip: str | None = None
    wan_type: str | None = None
    cpu_percent: float | None = None
    memory_percent: float | None = None
    uptime_seconds: int | None = None
    bytes_received: int | None = None
    bytes_sent: int | None = None
    download_rate: int | None = None
    upload_rate: int | None = None


class RouterEvent(BaseModel):
    """A state transition detected by a tracker."""

    event_type: EventType
    access_point: str | None = None  # None for network-wide events
    medium: Medium | None = None
    client: ConnectedClient | None = None
    tokens: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_now)


class UpdateResult(BaseModel):
    """Outcome of one full refresh cycle of a tracker."""

    events: list[RouterEvent] = Field(default_factory=list)
    failed: list[PollCategory] = Field(default_factory=list)
    skipped: list[PollCategory] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed
