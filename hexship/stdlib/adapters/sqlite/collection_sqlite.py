"""SQLite implementation of SupportsCollectionStorage using aiosqlite.

Documents are stored as JSON text in one table keyed by
``(collection, key)``, which is enough for the engine's state: run
snapshots and history, artifacts, deployments and gate records.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Literal

import aiosqlite

from hexship.kernel.logging import get_logger

logger = get_logger(__name__)

SQLiteJournalMode = Literal["WAL", "DELETE", "TRUNCATE", "PERSIST", "MEMORY", "OFF"]

_SCHEMA = """
CREATE TABLE IF NOT EXISTS documents (
    collection TEXT NOT NULL,
    key TEXT NOT NULL,
    data TEXT NOT NULL,
    PRIMARY KEY (collection, key)
)
"""


class SQLiteCollectionStorage:
    """Async SQLite ``SupportsCollectionStorage``.

    Database errors surface as ``ConnectionError`` so callers can treat the
    store as unreachable without knowing the backend.
    """

    def __init__(
        self,
        db_path: str | Path = ":memory:",
        timeout: float = 5.0,
        journal_mode: SQLiteJournalMode = "WAL",
    ) -> None:
        """Initialize SQLite storage.

        Args
        ----
            db_path: Path to the database file, or ":memory:".
            timeout: Connection timeout in seconds.
            journal_mode: SQLite journal mode. Default: "WAL".
        """
        self.db_path = str(db_path)
        self.timeout = timeout
        self.journal_mode = journal_mode
        self.connection: aiosqlite.Connection | None = None
        self._init_lock = asyncio.Lock()

    async def _ensure_database(self) -> aiosqlite.Connection:
        async with self._init_lock:
            if self.connection is not None:
                return self.connection
            if self.db_path != ":memory:":
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            connection = await aiosqlite.connect(self.db_path, timeout=self.timeout)
            async with connection.cursor() as cursor:
                if self.journal_mode and self.db_path != ":memory:":
                    await cursor.execute(f"PRAGMA journal_mode = {self.journal_mode}")
                await cursor.execute(_SCHEMA)
            await connection.commit()
            self.connection = connection
            logger.debug("Opened collection storage at {path}", path=self.db_path)
            return connection

    @asynccontextmanager
    async def _cursor(self) -> AsyncIterator[aiosqlite.Cursor]:
        try:
            connection = await self._ensure_database()
            async with connection.cursor() as cursor:
                yield cursor
            await connection.commit()
        except aiosqlite.Error as e:
            logger.error("Collection storage error: {error}", error=e)
            if self.connection is not None:
                await self.connection.rollback()
            raise ConnectionError(f"SQLite storage error: {e}") from e

    async def asave(self, collection: str, key: str, data: dict[str, Any]) -> None:
        payload = json.dumps(data, default=str)
        async with self._cursor() as cursor:
            await cursor.execute(
                "INSERT INTO documents (collection, key, data) VALUES (?, ?, ?) "
                "ON CONFLICT(collection, key) DO UPDATE SET data = excluded.data",
                (collection, key, payload),
            )

    async def aload(self, collection: str, key: str) -> dict[str, Any] | None:
        async with self._cursor() as cursor:
            await cursor.execute(
                "SELECT data FROM documents WHERE collection = ? AND key = ?", (collection, key)
            )
            row = await cursor.fetchone()
        return json.loads(row[0]) if row is not None else None

    async def aquery(
        self, collection: str, filters: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        """Query documents with optional equality filters (applied after decoding)."""
        async with self._cursor() as cursor:
            await cursor.execute(
                "SELECT data FROM documents WHERE collection = ? ORDER BY rowid", (collection,)
            )
            rows = await cursor.fetchall()
        docs = [json.loads(row[0]) for row in rows]
        if filters:
            docs = [d for d in docs if all(d.get(k) == v for k, v in filters.items())]
        return docs

    async def adelete(self, collection: str, key: str) -> bool:
        async with self._cursor() as cursor:
            await cursor.execute(
                "DELETE FROM documents WHERE collection = ? AND key = ?", (collection, key)
            )
            deleted = cursor.rowcount
        return deleted > 0

    async def aclose(self) -> None:
        """Close the connection; the next call reopens it."""
        if self.connection is not None:
            await self.connection.close()
            self.connection = None
