from __future__ import annotations
import json
from datetime import datetime, timezone
from typing import Any, Dict

import aiosqlite

from ..domain.errors import StoreError


class SQLiteKeyValueStore:
    """JSON values under string keys in a single SQLite table."""

    def __init__(self, path: str) -> None:
        self._path = path

    async def init(self) -> None:
        async with aiosqlite.connect(self._path) as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS kv (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            await db.commit()

    async def get(self, key: str) -> Any:
        try:
            async with aiosqlite.connect(self._path) as db:
                cur = await db.execute("SELECT value FROM kv WHERE key = ?", (key,))
                row = await cur.fetchone()
        except aiosqlite.Error as e:
            raise StoreError(f"read {key}: {e}") from e
        if row is None:
            return None
        try:
            return json.loads(row[0])
        except json.JSONDecodeError as e:
            raise StoreError(f"corrupt value for {key}: {e}") from e

    async def set(self, key: str, value: Any) -> None:
        await self.set_batch({key: value})

    async def set_batch(self, updates: Dict[str, Any]) -> None:
        now = datetime.now(timezone.utc).isoformat()
        try:
            async with aiosqlite.connect(self._path) as db:
                for key, value in updates.items():
                    await db.execute(
                        "INSERT INTO kv(key, value, updated_at) VALUES (?, ?, ?) "
                        "ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at",
                        (key, json.dumps(value), now),
                    )
                await db.commit()
        except aiosqlite.Error as e:
            raise StoreError(f"write {', '.join(updates)}: {e}") from e

    async def close(self) -> None:
        # Connections are per call
        return None
