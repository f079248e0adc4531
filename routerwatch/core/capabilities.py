"""Declarative capability and poll-category tables per operation mode."""

from __future__ import annotations

from routerwatch.core.models import OperationMode, PollCategory

ALARM_WAN_DISCONNECTED = "alarm_wan_disconnected"
EXTERNAL_IP = "external_ip"
WAN_TYPE = "wan_type"
METER_CPU_USAGE = "meter_cpu_usage"
METER_MEM_USED = "meter_mem_used"
METER_ONLINE_DEVICES = "meter_online_devices"
REALTIME_DOWNLOAD = "realtime_download"
REALTIME_UPLOAD = "realtime_upload"
TRAFFIC_TOTAL_RECEIVED = "traffic_total_received"
TRAFFIC_TOTAL_SENT = "traffic_total_sent"
UPTIME_DAYS = "uptime_days"

ROUTER_CAPABILITIES: tuple[str, ...] = (
    ALARM_WAN_DISCONNECTED,
    EXTERNAL_IP,
    WAN_TYPE,
    METER_CPU_USAGE,
    METER_MEM_USED,
    METER_ONLINE_DEVICES,
    REALTIME_DOWNLOAD,
    REALTIME_UPLOAD,
    TRAFFIC_TOTAL_RECEIVED,
    TRAFFIC_TOTAL_SENT,
    UPTIME_DAYS,
)

ACCESS_POINT_CAPABILITIES: tuple[str, ...] = (
    METER_CPU_USAGE,
    METER_MEM_USED,
    METER_ONLINE_DEVICES,
    UPTIME_DAYS,
)

CAPABILITIES: dict[OperationMode, tuple[str, ...]] = {
    OperationMode.ROUTER: ROUTER_CAPABILITIES,
    OperationMode.ACCESS_POINT: ACCESS_POINT_CAPABILITIES,
}

# Access points do not expose WAN or traffic data
CATEGORIES: dict[OperationMode, tuple[PollCategory, ...]] = {
    OperationMode.ROUTER: tuple(PollCategory),
    OperationMode.ACCESS_POINT: (
        PollCategory.ONLINE_DEVICES,
        PollCategory.CPU_USAGE,
        PollCategory.MEMORY_USAGE,
        PollCategory.UPTIME,
        PollCategory.FIRMWARE,
    ),
}

SECONDS_PER_DAY = 86400
BYTES_PER_MEGABYTE = 1024 * 1024


def capabilities_for(mode: OperationMode) -> tuple[str, ...]:
    return CAPABILITIES[mode]


def categories_for(mode: OperationMode) -> tuple[PollCategory, ...]:
    return CATEGORIES[mode]
