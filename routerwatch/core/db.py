"""Async SQLite persistence: settings store, adopted access points and event history."""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any

import aiosqlite

from routerwatch.core.models import AccessPoint, OperationMode, RouterEvent

logger = logging.getLogger(__name__)

_SCHEMA_VERSION = 1

_CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS settings (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS access_points (
    mac TEXT PRIMARY KEY,
    ip TEXT NOT NULL,
    alias TEXT,
    model TEXT,
    firmware TEXT,
    operation_mode INTEGER,
    adopted_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS event_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    event_type TEXT NOT NULL,
    access_point TEXT,
    client_mac TEXT,
    medium TEXT,
    tokens TEXT NOT NULL DEFAULT '{}',
    timestamp TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_history_client ON event_history(client_mac);
CREATE INDEX IF NOT EXISTS idx_history_timestamp ON event_history(timestamp);
"""


def _row_to_access_point(row: aiosqlite.Row) -> AccessPoint:
    mode = row["operation_mode"]
    return AccessPoint(
        mac=row["mac"],
        ip=row["ip"],
        alias=row["alias"],
        model=row["model"],
        firmware=row["firmware"],
        operation_mode=OperationMode(mode) if mode is not None else None,
    )


class RouterDatabase:
    """Async SQLite database; also serves as the key/value settings store."""

    def __init__(self, db_path: Path | str) -> None:
        self._db_path = Path(db_path)
        self._db: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        """Open the database and create tables if needed."""
        if str(self._db_path) != ":memory:":
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(str(self._db_path))
        self._db.row_factory = aiosqlite.Row
        await self._db.executescript(_CREATE_TABLES)

        # Check/set schema version
        async with self._db.execute("SELECT COUNT(*) FROM schema_version") as cursor:
            count = (await cursor.fetchone())[0]
        if count == 0:
            await self._db.execute(
                "INSERT INTO schema_version (version) VALUES (?)", (_SCHEMA_VERSION,)
            )
        await self._db.commit()
        logger.info("Database initialized at %s", self._db_path)

    async def close(self) -> None:
        """Close the database connection."""
        if self._db:
            await self._db.close()
            self._db = None

    # ------------------------------------------------------------------
    # Settings store
    # ------------------------------------------------------------------

    async def get(self, key: str) -> str | None:
        assert self._db is not None
        async with self._db.execute("SELECT value FROM settings WHERE key = ?", (key,)) as cursor:
            row = await cursor.fetchone()
            return row["value"] if row else None

    async def set(self, key: str, value: str) -> None:
        assert self._db is not None
        await self._db.execute(
            """
            INSERT INTO settings (key, value) VALUES (?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value
            """,
            (key, value),
        )
        await self._db.commit()

    # ------------------------------------------------------------------
    # Device store
    # ------------------------------------------------------------------

    async def upsert_access_point(self, ap: AccessPoint) -> None:
        assert self._db is not None
        await self._db.execute(
            """
            INSERT INTO access_points (mac, ip, alias, model, firmware, operation_mode, adopted_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(mac) DO UPDATE SET
                ip = excluded.ip,
                alias = COALESCE(excluded.alias, alias),
                model = COALESCE(excluded.model, model),
                firmware = COALESCE(excluded.firmware, firmware),
                operation_mode = COALESCE(excluded.operation_mode, operation_mode)
            """,
            (
                ap.mac,
                ap.ip,
                ap.alias,
                ap.model,
                ap.firmware,
                int(ap.operation_mode) if ap.operation_mode is not None else None,
                datetime.now().astimezone().isoformat(),
            ),
        )
        await self._db.commit()

    async def get_access_point(self, mac: str) -> AccessPoint | None:
        assert self._db is not None
        async with self._db.execute(
            "SELECT * FROM access_points WHERE mac = ?", (mac.upper(),)
        ) as cursor:
            row = await cursor.fetchone()
            return _row_to_access_point(row) if row else None

    async def get_access_points(self) -> list[AccessPoint]:
        assert self._db is not None
        async with self._db.execute("SELECT * FROM access_points ORDER BY adopted_at") as cursor:
            rows = await cursor.fetchall()
            return [_row_to_access_point(row) for row in rows]

    async def delete_access_point(self, mac: str) -> bool:
        assert self._db is not None
        cursor = await self._db.execute("DELETE FROM access_points WHERE mac = ?", (mac.upper(),))
        await self._db.commit()
        return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Event history
    # ------------------------------------------------------------------

    async def add_event(self, event: RouterEvent) -> None:
        assert self._db is not None
        await self._db.execute(
            """
            INSERT INTO event_history (event_type, access_point, client_mac, medium, tokens, timestamp)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                event.event_type.value,
                event.access_point,
                event.client.mac if event.client else None,
                event.medium.value if event.medium else None,
                json.dumps(event.tokens, default=str),
                event.timestamp.isoformat(),
            ),
        )
        await self._db.commit()

    async def get_events(
        self,
        limit: int = 100,
        client_mac: str | None = None,
    ) -> list[dict[str, Any]]:
        """Get the most recent events, optionally for one client."""
        assert self._db is not None
        query = "SELECT * FROM event_history"
        params: list[Any] = []
        if client_mac:
            query += " WHERE client_mac = ?"
            params.append(client_mac.upper())
        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)
        async with self._db.execute(query, params) as cursor:
            rows = await cursor.fetchall()
            return [
                {
                    "id": row["id"],
                    "event_type": row["event_type"],
                    "access_point": row["access_point"],
                    "client_mac": row["client_mac"],
                    "medium": row["medium"],
                    "tokens": json.loads(row["tokens"]),
                    "timestamp": row["timestamp"],
                }
                for row in rows
            ]
