"""Network-wide view of connected clients across all managed access points."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Iterable

from routerwatch.core.differ import diff, index
from routerwatch.core.events import EventBus
from routerwatch.core.models import ConnectedClient, EventType, RouterEvent, normalize_mac
from routerwatch.core.tracker import DeviceStateTracker

logger = logging.getLogger(__name__)


class NetworkTracker:
    """Keeps the MAC-union of every client visible anywhere on the network.

    It only reads what the per-device trackers already published and never
    mutates them. Membership queries are answered from the retained union and
    never touch the network.
    """

    def __init__(self, event_bus: EventBus) -> None:
        self.event_bus = event_bus
        self._clients: dict[str, ConnectedClient] = {}
        self._populated = False
        self._contributors: set[str] = set()

    @property
    def clients(self) -> list[ConnectedClient]:
        return list(self._clients.values())

    @property
    def populated(self) -> bool:
        return self._populated

    def update(
        self,
        clients: Iterable[ConnectedClient],
        silent: set[str] | None = None,
    ) -> list[RouterEvent]:
        """Replace the union and emit events for what entered or left.

        The first population emits nothing, and neither do clients whose MAC
        is in ``silent``.
        """
        union = index(clients, lambda c: c.mac)
        changes = diff(self._clients.values(), union.values())
        first = not self._populated
        self._clients = dict(union)  # type: ignore[arg-type]
        self._populated = True
        if first:
            logger.debug("Network view populated with %d clients", len(union))
            return []

        events = [
            RouterEvent(
                event_type=EventType.NETWORK_DEVICE_DISCONNECTED,
                client=client,
                tokens=client.tokens(),
            )
            for client in changes.left
        ]
        events.extend(
            RouterEvent(
                event_type=EventType.NETWORK_DEVICE_CONNECTED,
                client=client,
                tokens=client.tokens(),
            )
            for client in changes.entered
            if not silent or client.mac not in silent
        )
        self.event_bus.publish_all(events)
        return events

    def refresh_from_trackers(self, trackers: Iterable[DeviceStateTracker]) -> list[RouterEvent]:
        """Recompute the union from the trackers' current client lists.

        Trackers that have never populated their client list are left out of
        the union. When one populates later, its clients join silently: that is
        the first look at that access point, not a wave of new connections.
        """
        populated = [t for t in trackers if t.state.clients_populated]
        if not populated:
            return []
        clients: list[ConnectedClient] = []
        silent: set[str] = set()
        for tracker in populated:
            clients.extend(tracker.clients)
            if tracker.mac not in self._contributors:
                silent.update(c.mac for c in tracker.clients)
        self._contributors = {t.mac for t in populated}
        return self.update(clients, silent)

    def refresh_from_listing(self, clients: Iterable[ConnectedClient]) -> list[RouterEvent]:
        """Use a network-wide listing fetched directly from the main router."""
        return self.update(clients)

    def is_connected(self, mac: str) -> bool:
        return normalize_mac(mac) in self._clients

    def get(self, mac: str) -> ConnectedClient | None:
        return self._clients.get(normalize_mac(mac))

    async def is_connected_fresh(self, mac: str, poll: Callable[[], Awaitable[object]]) -> bool:
        """Force a poll through ``poll`` before answering."""
        await poll()
        return self.is_connected(mac)
