"""MAC vendor/manufacturer resolution for clients the router reports without one."""

from __future__ import annotations

import logging
from collections.abc import Iterable

from mac_vendor_lookup import AsyncMacLookup, VendorNotFoundError

from routerwatch.core.models import ConnectedClient

logger = logging.getLogger(__name__)


def _oui(mac: str) -> str:
    return mac.upper().replace(":", "").replace("-", "")[:6]


class VendorResolver:
    """Resolve vendors by OUI, caching each prefix.

    The first lookup failure other than an unknown prefix (typically a missing
    vendor database that could not be downloaded) disables resolution.
    """

    def __init__(self, lookup: AsyncMacLookup | None = None) -> None:
        self._lookup = lookup or AsyncMacLookup()
        self._cache: dict[str, str | None] = {}
        self._disabled = False

    @property
    def disabled(self) -> bool:
        return self._disabled

    async def lookup(self, mac: str) -> str | None:
        """Return the vendor of ``mac`` or None if unknown."""
        prefix = _oui(mac)
        if prefix in self._cache:
            return self._cache[prefix]
        if self._disabled:
            return None
        try:
            vendor: str | None = await self._lookup.lookup(mac)
        except VendorNotFoundError:
            vendor = None
        except Exception as exc:
            logger.warning("MAC vendor lookup unavailable, disabling: %s", exc)
            self._disabled = True
            return None
        self._cache[prefix] = vendor or None
        return self._cache[prefix]

    async def fill(self, clients: Iterable[ConnectedClient]) -> list[ConnectedClient]:
        """Copy ``clients``, filling in the vendor where the router gave none."""
        filled: list[ConnectedClient] = []
        for client in clients:
            if not client.vendor:
                vendor = await self.lookup(client.mac)
                if vendor:
                    client = client.model_copy(update={"vendor": vendor})
            filled.append(client)
        return filled
