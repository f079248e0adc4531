"""Parsers for the semi-structured bodies returned by the router's appGet hooks.

Several hooks answer with JSON, others with text that only looks like
JavaScript, e.g. ``wanlink()``::

    function wanlink_status() { return 1;}
    function wanlink_ipaddr() { return '203.0.113.7';}

Everything here is pure and raises :class:`RouterResponseError` on bodies it
cannot make sense of.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from routerwatch.core.errors import RouterResponseError
from routerwatch.core.models import (
    AccessPoint,
    ConnectedClient,
    Medium,
    RouterInfo,
    TrafficCounters,
    WanStatus,
    normalize_mac,
)

logger = logging.getLogger(__name__)

_JS_RETURN = re.compile(
    r"function\s+(?P<prefix>[a-z]+)_(?P<key>\w+)\s*\(\)\s*\{\s*return\s+(?P<value>.*?)\s*;\s*\}"
)
_UPTIME = re.compile(r"\((\d+)\s*secs?", re.IGNORECASE)
_CPU_KEY = re.compile(r"^cpu(\d+)_(total|usage)$")
_MAC_LENGTH = 17

# isWL values of get_clientlist()
_MEDIUM_BY_IS_WL: dict[str, Medium] = {
    "0": Medium.WIRED,
    "1": Medium.WIFI_2_4,
    "2": Medium.WIFI_5,
    "3": Medium.WIFI_5,
    "4": Medium.WIFI_6,
}


# ---------------------------------------------------------------------------
# Generic body helpers
# ---------------------------------------------------------------------------

def parse_js_functions(text: str, prefix: str) -> dict[str, int | str]:
    """Parse ``function <prefix>_<key>() { return <value>;}`` lines.

    Quoted values become strings, bare numbers become integers. Field order is
    irrelevant; unknown value shapes are kept as stripped strings.
    """
    result: dict[str, int | str] = {}
    for match in _JS_RETURN.finditer(text):
        if match.group("prefix") != prefix:
            continue
        raw = match.group("value").strip()
        if len(raw) >= 2 and raw[0] == raw[-1] and raw[0] in "'\"":
            result[match.group("key")] = raw[1:-1]
            continue
        try:
            result[match.group("key")] = int(raw)
        except ValueError:
            result[match.group("key")] = raw
    return result


def extract_object(body: Any, name: str) -> dict[str, Any]:
    """Return the ``name`` object from a hook body.

    Accepts an already decoded dict, a JSON document, or text of the form
    ``name:{...}`` that is not valid JSON as a whole.
    """
    if isinstance(body, dict):
        value = body.get(name, body)
        if isinstance(value, dict):
            return value
        raise RouterResponseError(f"'{name}' is not an object")

    if not isinstance(body, str):
        raise RouterResponseError(f"Unexpected body type for '{name}': {type(body).__name__}")

    try:
        return extract_object(json.loads(body), name)
    except ValueError:
        pass

    idx = body.find(name)
    start = body.find("{", idx + len(name) if idx >= 0 else 0)
    end = body.rfind("}")
    if start < 0 or end <= start:
        raise RouterResponseError(f"No object found for '{name}'")
    fragment = body[start : end + 1]
    # A trailing brace belonging to the outer wrapper would break decoding
    for candidate in (fragment, fragment[:-1].rstrip()):
        try:
            value = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(value, dict):
            return value
    raise RouterResponseError(f"Could not decode '{name}' object")


def parse_int(value: Any, default: int = 0) -> int:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return default


def clamp_percent(value: float) -> float:
    return max(0.0, min(100.0, value))


# ---------------------------------------------------------------------------
# Typed hooks
# ---------------------------------------------------------------------------

def parse_wan_status(body: Any) -> WanStatus:
    """Parse the ``wanlink()`` hook."""
    if not isinstance(body, str):
        raise RouterResponseError("wanlink() did not return text")
    fields = parse_js_functions(body, "wanlink")
    if "status" not in fields:
        raise RouterResponseError("wanlink() has no status field")
    ipaddr = fields.get("ipaddr")
    link_type = fields.get("type")
    return WanStatus(
        connected=fields["status"] == 1,
        external_ip=str(ipaddr) if ipaddr not in (None, "", "0.0.0.0") else None,
        link_type=str(link_type) if link_type not in (None, "") else None,
    )


def parse_uptime(body: Any) -> int:
    """Parse ``uptime()``: ``Thu, 01 Jan 2026 10:00:00 +0100(86400 secs since boot)``."""
    match = _UPTIME.search(str(body))
    if not match:
        raise RouterResponseError(f"Unrecognized uptime body: {body!r}")
    return int(match.group(1))


def parse_cpu_percent(body: Any) -> float:
    """Sum ``cpuN_usage`` over ``cpuN_total`` for every core the router reports."""
    data = extract_object(body, "cpu_usage")
    total = 0
    used = 0
    for key, value in data.items():
        match = _CPU_KEY.match(key)
        if not match:
            continue
        if match.group(2) == "total":
            total += parse_int(value)
        else:
            used += parse_int(value)
    if total <= 0:
        raise RouterResponseError("cpu_usage() reported no CPU time")
    return clamp_percent(100 * used / total)


def parse_memory_percent(body: Any) -> float:
    data = extract_object(body, "memory_usage")
    total = parse_int(data.get("mem_total"))
    used = parse_int(data.get("mem_used"))
    if total <= 0:
        raise RouterResponseError("memory_usage() reported no total memory")
    return clamp_percent(100 * used / total)


def parse_traffic(body: Any) -> TrafficCounters:
    """Parse ``netdev(appobj)``; counters are hex strings in bytes."""
    data = extract_object(body, "netdev")
    try:
        return TrafficCounters(
            received=int(str(data["INTERNET_rx"]), 16),
            sent=int(str(data["INTERNET_tx"]), 16),
        )
    except (KeyError, ValueError) as exc:
        raise RouterResponseError(f"Invalid netdev counters: {exc}") from exc


def medium_from_is_wl(value: Any) -> Medium:
    return _MEDIUM_BY_IS_WL.get(str(value).strip(), Medium.WIRED)


def parse_client_list(body: Any, access_point: str | None = None) -> list[ConnectedClient]:
    """Parse ``get_clientlist()`` into the online clients.

    When ``access_point`` is given, only clients whose parent node matches it
    are kept; clients without parent information belong to every node.
    """
    data = extract_object(body, "get_clientlist")
    ap_mac = normalize_mac(access_point) if access_point else None
    clients: list[ConnectedClient] = []
    seen: set[str] = set()

    for key, entry in data.items():
        if len(key) != _MAC_LENGTH or not isinstance(entry, dict):
            continue
        if str(entry.get("isOnline", "0")) != "1":
            continue
        mac = normalize_mac(entry.get("mac") or key)
        if mac in seen:
            continue
        parent = entry.get("amesh_papMac") or None
        if ap_mac and parent and normalize_mac(parent) != ap_mac:
            continue
        rssi = entry.get("rssi")
        seen.add(mac)
        clients.append(
            ConnectedClient(
                mac=mac,
                ip=entry.get("ip") or None,
                name=entry.get("name") or None,
                nickname=entry.get("nickName") or None,
                vendor=entry.get("vendor") or None,
                rssi=parse_int(rssi) if rssi not in (None, "") else None,
                medium=medium_from_is_wl(entry.get("isWL", "0")),
                access_point=parent or ap_mac,
            )
        )
    logger.debug("Parsed %d online clients (access_point=%s)", len(clients), ap_mac)
    return clients


def parse_router_info(body: Any) -> RouterInfo:
    """Parse the ``nvram_get(...)`` hook used for product and firmware info."""
    data = body
    if isinstance(body, str):
        try:
            data = json.loads(body)
        except ValueError as exc:
            raise RouterResponseError("nvram_get() is not JSON") from exc
    if not isinstance(data, dict):
        raise RouterResponseError("nvram_get() is not an object")
    firmware = None
    if data.get("firmver"):
        firmware = ".".join(
            str(p) for p in (data.get("firmver"), data.get("buildno"), data.get("extendno")) if p
        )
    new_firmware = data.get("webs_state_info") or None
    return RouterInfo(
        product_id=data.get("productid") or None,
        mac=normalize_mac(data["lan_hwaddr"]) if data.get("lan_hwaddr") else None,
        firmware=firmware,
        new_firmware=new_firmware,
    )


def parse_access_points(body: Any) -> list[AccessPoint]:
    """Parse ``get_cfg_clientlist()`` into the flat list of mesh nodes."""
    if isinstance(body, str):
        try:
            body = json.loads(body)
        except ValueError as exc:
            raise RouterResponseError("get_cfg_clientlist() is not JSON") from exc
    nodes = body.get("get_cfg_clientlist") if isinstance(body, dict) else None
    if not isinstance(nodes, list):
        raise RouterResponseError("get_cfg_clientlist() has no node list")

    access_points: list[AccessPoint] = []
    for node in nodes:
        if not isinstance(node, dict) or not node.get("mac") or not node.get("ip"):
            continue
        access_points.append(
            AccessPoint(
                mac=node["mac"],
                ip=node["ip"],
                alias=node.get("alias") or None,
                model=node.get("model_name") or None,
                firmware=node.get("fwver") or None,
                new_firmware=node.get("newfwver") or None,
            )
        )
    return access_points
