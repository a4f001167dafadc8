"""
Async SQLite connection for the session record store.

One connection in autocommit mode, WAL journal, statements serialized by a
lock. The connection opens lazily on first use.
"""

import aiosqlite
from pathlib import Path
from typing import Optional, List, Sequence
import asyncio

from ..utils.logging import get_logger


logger = get_logger("park-engine.storage")

# Milliseconds SQLite waits on a locked database before failing.
BUSY_TIMEOUT_MS = 5000


class Database:
    """Async SQLite database wrapper."""

    def __init__(self, db_path: Path | str):
        self.db_path = Path(db_path)
        self._connection: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    @property
    def is_connected(self) -> bool:
        return self._connection is not None

    async def connect(self) -> None:
        if self._connection is not None:
            return
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        connection = await aiosqlite.connect(self.db_path, isolation_level=None)
        connection.row_factory = aiosqlite.Row
        await connection.execute("PRAGMA journal_mode=WAL")
        await connection.execute("PRAGMA synchronous=NORMAL")
        await connection.execute(f"PRAGMA busy_timeout={BUSY_TIMEOUT_MS}")
        self._connection = connection
        logger.info("database_connected", path=str(self.db_path))

    async def close(self) -> None:
        if self._connection is None:
            return
        await self._connection.close()
        self._connection = None
        logger.info("database_closed", path=str(self.db_path))

    async def execute(self, sql: str, parameters: Sequence = ()) -> int:
        """Run one statement and return the number of rows it changed."""
        async with self._lock:
            await self.connect()
            async with self._connection.execute(sql, parameters) as cursor:
                return cursor.rowcount

    async def executescript(self, script: str) -> None:
        async with self._lock:
            await self.connect()
            await self._connection.executescript(script)

    async def fetchone(self, sql: str, parameters: Sequence = ()) -> Optional[aiosqlite.Row]:
        async with self._lock:
            await self.connect()
            async with self._connection.execute(sql, parameters) as cursor:
                return await cursor.fetchone()

    async def fetchall(self, sql: str, parameters: Sequence = ()) -> List[aiosqlite.Row]:
        async with self._lock:
            await self.connect()
            async with self._connection.execute(sql, parameters) as cursor:
                return list(await cursor.fetchall())

    async def __aenter__(self) -> "Database":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()


__all__ = ['Database']
