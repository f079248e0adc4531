"""Typer CLI application for RouterWatch."""

from __future__ import annotations

import typer

from routerwatch.cli.commands import (
    cmd_clients,
    cmd_events,
    cmd_led,
    cmd_login,
    cmd_reboot,
    cmd_serve,
    cmd_status,
)

app = typer.Typer(
    name="routerwatch",
    help="RouterWatch: ASUS router and access point monitoring.",
    no_args_is_help=True,
    add_completion=False,
)

app.command("status", help="Poll every router and access point once and show their state.")(cmd_status)
app.command("clients", help="List connected clients per access point.")(cmd_clients)
app.command("events", help="Show the persisted event history.")(cmd_events)
app.command("reboot", help="Reboot a router or access point.")(cmd_reboot)
app.command("led", help="Turn the LEDs of a router or access point on or off.")(cmd_led)
app.command("login", help="Verify router credentials and remember the router address.")(cmd_login)
app.command("serve", help="Start the API server with background polling.")(cmd_serve)


if __name__ == "__main__":
    app()
