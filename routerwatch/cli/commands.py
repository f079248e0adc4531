"""CLI command implementations for RouterWatch."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Optional, TypeVar

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from routerwatch.config import Settings, get_settings
from routerwatch.core.client import RouterClient
from routerwatch.core.db import RouterDatabase
from routerwatch.core.errors import RouterError
from routerwatch.core.events import EventBus
from routerwatch.core.models import ConnectedClient, Medium, PollCategory
from routerwatch.main import ManagedAccessPoint, RouterMonitor, load_stored_settings

console = Console()

T = TypeVar("T")

_MEDIUM_LABEL: dict[Medium, str] = {
    Medium.WIRED: "LAN",
    Medium.WIFI_2_4: "2.4G",
    Medium.WIFI_5: "5G",
    Medium.WIFI_6: "6G",
}


def _setup_logging(level: str = "WARNING") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.WARNING),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _trunc(text: str, width: int) -> str:
    """Truncate text with ellipsis if too long."""
    if len(text) <= width:
        return text
    return text[: width - 1] + "…"


async def _with_monitor(action: Callable[[RouterMonitor], Awaitable[T]], settings: Settings | None = None) -> T:
    """Adopt every access point without scheduling, run ``action``, then clean up."""
    settings = settings or get_settings(capability_settle_delay=0)
    db = RouterDatabase(settings.resolved_db_path)
    await db.initialize()
    settings = await load_stored_settings(settings, db)
    monitor = RouterMonitor(settings, db, EventBus())
    try:
        await monitor.start(schedule=False)
        return await action(monitor)
    finally:
        await monitor.stop()
        await db.close()


def _run(action: Callable[[RouterMonitor], Awaitable[T]]) -> T:
    try:
        return asyncio.run(_with_monitor(action))
    except RouterError as exc:
        console.print(f"[red]Router error:[/] {exc}")
        raise typer.Exit(1)


def _build_client_table(clients: list[ConnectedClient], title: str) -> Table:
    table = Table(
        title=title,
        show_lines=False,
        expand=True,
        padding=(0, 1),
        title_style="bold cyan",
        border_style="bright_black",
    )
    table.add_column("Via", width=4, no_wrap=True, justify="center")
    table.add_column("IP Address", min_width=11, max_width=15, no_wrap=True)
    table.add_column("Name", no_wrap=True, ratio=2)
    table.add_column("MAC", width=17, no_wrap=True, style="dim")
    if console.width >= 110:
        table.add_column("Vendor", no_wrap=True, ratio=1)
    table.add_column("RSSI", width=5, no_wrap=True, justify="right")

    for client in sorted(clients, key=lambda c: (list(Medium).index(c.medium), c.ip or "")):
        row = [
            _MEDIUM_LABEL[client.medium],
            client.ip or "-",
            _trunc(client.display_name, 40),
            client.mac,
        ]
        if console.width >= 110:
            row.append(client.vendor or "Unknown")
        row.append(str(client.rssi) if client.rssi is not None else "-")
        table.add_row(*row)
    return table


def _status_panel(managed: ManagedAccessPoint) -> Panel:
    tracker = managed.tracker
    snap = tracker.state.snapshot
    ap = tracker.access_point

    def _fmt(value: object, suffix: str = "") -> str:
        return "N/A" if value is None else f"{value}{suffix}"

    lines = [
        f"[bold]MAC:[/]          {ap.mac}",
        f"[bold]IP:[/]           {ap.ip}",
        f"[bold]Mode:[/]         {tracker.mode.name.replace('_', ' ').title()}",
        f"[bold]Firmware:[/]     {_fmt(ap.firmware)}"
        + (f" [yellow](update {ap.new_firmware} available)[/]" if ap.new_firmware else ""),
        f"[bold]Clients:[/]      {len(tracker.clients)}",
        f"[bold]CPU:[/]          {_fmt(snap.cpu_percent, '%')}",
        f"[bold]Memory:[/]       {_fmt(snap.memory_percent, '%')}",
        f"[bold]Uptime:[/]       {_fmt(snap.uptime_seconds and round(snap.uptime_seconds / 86400, 1), ' days')}",
    ]
    if snap.wan_connected is not None:
        wan = "[green]connected[/]" if snap.wan_connected else "[red]disconnected[/]"
        lines.append(f"[bold]WAN:[/]          {wan} ({_fmt(snap.wan_type)})")
        lines.append(f"[bold]External IP:[/]  {_fmt(snap.external_ip)}")
    if tracker.warning:
        lines.append(f"\n[yellow]{tracker.warning}[/]")
    border = "cyan" if tracker.available else "red"
    return Panel("\n".join(lines), title=ap.display_name, border_style=border)


def cmd_status(
    log_level: str = typer.Option("WARNING", "--log-level", "-l", help="Logging level."),
) -> None:
    """Poll every router and access point once and show their state."""
    _setup_logging(log_level)

    async def _status(monitor: RouterMonitor) -> list[ManagedAccessPoint]:
        await monitor.refresh_all()
        return list(monitor.devices.values())

    for managed in _run(_status):
        console.print(_status_panel(managed))


def cmd_clients(
    medium: Optional[Medium] = typer.Option(None, "--medium", "-m", help="Only show clients on this medium."),
    log_level: str = typer.Option("WARNING", "--log-level", "-l"),
) -> None:
    """List the clients connected to each access point."""
    _setup_logging(log_level)

    async def _clients(monitor: RouterMonitor) -> list[tuple[str, list[ConnectedClient]]]:
        result = []
        for managed in monitor.devices.values():
            try:
                await managed.tracker.refresh_category(PollCategory.ONLINE_DEVICES)
            except RouterError as exc:
                console.print(f"[yellow]Warning:[/] {managed.access_point.display_name}: {exc}")
            tracker = managed.tracker
            clients = tracker.clients_on(medium) if medium else tracker.clients
            result.append((managed.access_point.display_name, clients))
        return result

    total = 0
    for name, clients in _run(_clients):
        total += len(clients)
        console.print()
        console.print(_build_client_table(clients, title=name))
    console.print(f"\n  [bold]{total}[/] clients total.\n")


def cmd_events(
    limit: int = typer.Option(50, "--limit", "-n", help="Number of events to show."),
    client: Optional[str] = typer.Option(None, "--client", "-c", help="Only events of this client MAC."),
    log_level: str = typer.Option("WARNING", "--log-level", "-l"),
) -> None:
    """Show the persisted event history."""
    _setup_logging(log_level)

    async def _events() -> list[dict]:
        settings = get_settings()
        db = RouterDatabase(settings.resolved_db_path)
        await db.initialize()
        try:
            return await db.get_events(limit=limit, client_mac=client)
        finally:
            await db.close()

    events = asyncio.run(_events())
    if not events:
        console.print("[yellow]No events recorded yet. Run 'routerwatch serve' first.[/]")
        raise typer.Exit(0)

    table = Table(title="Recent Events", title_style="bold cyan", border_style="bright_black")
    table.add_column("Time", no_wrap=True)
    table.add_column("Event", no_wrap=True)
    table.add_column("Access Point", no_wrap=True, style="dim")
    table.add_column("Client", no_wrap=True)
    for event in events:
        tokens = event["tokens"]
        who = tokens.get("nickname") or tokens.get("name") or event["client_mac"] or ""
        table.add_row(event["timestamp"][:19], event["event_type"], event["access_point"] or "network", who)
    console.print(table)


def cmd_reboot(
    mac: str = typer.Argument(help="MAC address of the router or access point."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
    log_level: str = typer.Option("WARNING", "--log-level", "-l"),
) -> None:
    """Reboot a router or access point."""
    _setup_logging(log_level)
    if not yes:
        typer.confirm(f"Reboot {mac}?", abort=True)

    async def _reboot(monitor: RouterMonitor) -> None:
        await monitor.reboot(mac)

    try:
        _run(_reboot)
    except KeyError as exc:
        console.print(f"[red]Reboot failed:[/] {exc}")
        raise typer.Exit(1)
    console.print(f"[green]Reboot of {mac.upper()} requested.[/]")


def cmd_led(
    mac: str = typer.Argument(help="MAC address of the router or access point."),
    state: str = typer.Argument(help="'on' or 'off'."),
    log_level: str = typer.Option("WARNING", "--log-level", "-l"),
) -> None:
    """Turn the LEDs of a router or access point on or off."""
    _setup_logging(log_level)
    if state.lower() not in ("on", "off"):
        console.print(f"[red]Unsupported state: {state}. Use on or off.[/]")
        raise typer.Exit(1)
    on = state.lower() == "on"

    async def _led(monitor: RouterMonitor) -> None:
        await monitor.set_led(mac, on)

    try:
        _run(_led)
    except KeyError as exc:
        console.print(f"[red]LED change failed:[/] {exc}")
        raise typer.Exit(1)
    console.print(f"[green]LEDs of {mac.upper()} turned {state.lower()}.[/]")


def cmd_login(
    url: str = typer.Option(..., "--url", prompt="Router URL", help="e.g. http://192.168.1.1"),
    username: str = typer.Option(..., "--username", "-u", prompt=True),
    password: str = typer.Option(..., "--password", "-p", prompt=True, hide_input=True),
    log_level: str = typer.Option("WARNING", "--log-level", "-l"),
) -> None:
    """Verify credentials against the router and remember the router address."""
    _setup_logging(log_level)
    if "://" not in url:
        url = f"http://{url}"

    async def _login() -> int:
        client = RouterClient(url, username, password)
        try:
            await client.authenticate()
            access_points = await client.get_access_points()
        finally:
            await client.dispose()
        settings = get_settings()
        db = RouterDatabase(settings.resolved_db_path)
        await db.initialize()
        try:
            await db.set("router_url", url)
            await db.set("username", username)
        finally:
            await db.close()
        return len(access_points)

    try:
        count = asyncio.run(_login())
    except RouterError as exc:
        console.print(f"[red]Login failed:[/] {exc}")
        raise typer.Exit(1)
    console.print(f"[green]Logged in to {url}; {count} access points found.[/]")
    console.print("Set [bold]ROUTERWATCH_PASSWORD[/] or add it to ~/.routerwatch/config.yaml to start polling.")


def cmd_serve(
    host: str = typer.Option("127.0.0.1", "--host", "-h", help="API server bind host."),
    port: int = typer.Option(8556, "--port", "-p", help="API server bind port."),
    no_poll: bool = typer.Option(False, "--no-poll", help="Serve the API without polling the routers."),
    log_level: str = typer.Option("INFO", "--log-level", "-l"),
) -> None:
    """Start the API server with background polling."""
    _setup_logging(log_level)

    from routerwatch.main import run_server

    asyncio.run(run_server(host=host, port=port, with_polling=not no_poll))
