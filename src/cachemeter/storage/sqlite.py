from pathlib import Path

import aiosqlite
import structlog

from cachemeter.result import Err, Ok, Result, StorageErrorKind

logger = structlog.get_logger()


class SQLiteStore:
    """
    SQLiteStore implements the PersistentStore protocol on a single
    `kv` table in an aiosqlite database. Every operation commits on
    its own; there are no multi-key transactions.

    Any sqlite or filesystem failure is converted into an Err
    result. A store that failed to open keeps answering with
    UNAVAILABLE so the caches above it run memory-only.
    """

    def __init__(self, db_path: "str | Path") -> "None":
        self.db_path = Path(db_path)
        self._db: "aiosqlite.Connection | None" = None

    async def open(self) -> "Result[None]":
        """
        opens the connection and creates the schema.
        """
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._db = await aiosqlite.connect(self.db_path)
            await self._db.execute(
                "CREATE TABLE IF NOT EXISTS kv (key TEXT PRIMARY KEY, value TEXT NOT NULL)"
            )
            await self._db.commit()
        except (aiosqlite.Error, OSError) as exc:
            logger.warning("sqlite_store_open_failed", path=str(self.db_path), error=str(exc))
            self._db = None
            return Err(StorageErrorKind.UNAVAILABLE, str(exc))

        logger.debug("sqlite_store_opened", path=str(self.db_path))
        return Ok(None)

    async def get_item(self, key: "str") -> "Result[str | None]":
        if self._db is None:
            return Err(StorageErrorKind.UNAVAILABLE, "store is not open")
        try:
            async with self._db.execute("SELECT value FROM kv WHERE key = ?", (key,)) as cursor:
                row = await cursor.fetchone()
        except aiosqlite.Error as exc:
            return Err(StorageErrorKind.UNAVAILABLE, str(exc))
        return Ok(row[0] if row else None)

    async def set_item(self, key: "str", value: "str") -> "Result[None]":
        if self._db is None:
            return Err(StorageErrorKind.UNAVAILABLE, "store is not open")
        try:
            await self._db.execute(
                "INSERT INTO kv (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (key, value),
            )
            await self._db.commit()
        except aiosqlite.Error as exc:
            return Err(StorageErrorKind.WRITE_FAILURE, str(exc))
        return Ok(None)

    async def remove_item(self, key: "str") -> "Result[None]":
        if self._db is None:
            return Err(StorageErrorKind.UNAVAILABLE, "store is not open")
        try:
            await self._db.execute("DELETE FROM kv WHERE key = ?", (key,))
            await self._db.commit()
        except aiosqlite.Error as exc:
            return Err(StorageErrorKind.WRITE_FAILURE, str(exc))
        return Ok(None)

    async def get_all_keys(self) -> "Result[list[str]]":
        if self._db is None:
            return Err(StorageErrorKind.UNAVAILABLE, "store is not open")
        try:
            async with self._db.execute("SELECT key FROM kv") as cursor:
                rows = await cursor.fetchall()
        except aiosqlite.Error as exc:
            return Err(StorageErrorKind.UNAVAILABLE, str(exc))
        return Ok([row[0] for row in rows])

    async def close(self) -> "None":
        """
        closes the underlying connection.
        """
        if self._db is not None:
            await self._db.close()
            self._db = None
