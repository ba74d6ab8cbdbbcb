"""
Shared aiosqlite connection for one process.

Each Wardcord process (bot shard or standalone job worker) keeps a single
long-lived connection to the database file. Inside the process, writers
queue on a semaphore so coroutines never interleave statements of two
transactions. Across processes, SQLite's file lock does the work: the
connection waits up to ``BUSY_TIMEOUT_MS`` for it, and claims that read
then write use ``transaction(immediate=True)`` so the lock is taken
before the read.

    await db_connection.open(path)

    async with db_connection.read() as conn:
        cursor = await conn.execute("SELECT ...")

    async with db_connection.transaction(immediate=True) as conn:
        await conn.execute("UPDATE ...")

    await db_connection.close()
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

import aiosqlite

from wardcord.util.logger import get_logger

logger = get_logger("database_connection")

BUSY_TIMEOUT_MS = 30_000

_PRAGMAS = (
    "PRAGMA journal_mode = WAL",
    "PRAGMA foreign_keys = ON",
    "PRAGMA synchronous = NORMAL",
    f"PRAGMA busy_timeout = {BUSY_TIMEOUT_MS}",
    "PRAGMA temp_store = MEMORY",
)


class ConnectionManager:
    """
    Owner of one aiosqlite connection.

    Production code uses the module-level :data:`db_connection`; tests open
    extra managers on the same file to act as other processes.
    """

    def __init__(self) -> None:
        self._conn: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()
        self.path: Path | None = None

    async def open(self, path: Path) -> None:
        """Connect to ``path`` (creating parent directories) and apply the pragmas."""
        if self._conn is not None:
            logger.warning("[DB CONNECTION] Connection to %s already open; ignoring open(%s)", self.path, path)
            return

        path.parent.mkdir(parents=True, exist_ok=True)
        conn = await aiosqlite.connect(path, timeout=BUSY_TIMEOUT_MS / 1000)
        conn.row_factory = aiosqlite.Row
        for pragma in _PRAGMAS:
            await conn.execute(pragma)
        await conn.commit()

        self._conn = conn
        self.path = path
        logger.info("[DB CONNECTION] Opened %s", path)

    async def close(self) -> None:
        if self._conn is None:
            return

        conn, self._conn = self._conn, None
        try:
            await conn.execute("PRAGMA wal_checkpoint(TRUNCATE)")
            await conn.commit()
        except aiosqlite.Error:
            logger.exception("[DB CONNECTION] WAL checkpoint failed while closing %s", self.path)
        finally:
            await conn.close()
            logger.info("[DB CONNECTION] Closed %s", self.path)

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    @property
    def connection(self) -> aiosqlite.Connection:
        """The raw connection; raises RuntimeError before :meth:`open`."""
        if self._conn is None:
            raise RuntimeError("Database connection is not open; call open(path) first")
        return self._conn

    @asynccontextmanager
    async def transaction(self, *, immediate: bool = False) -> AsyncIterator[aiosqlite.Connection]:
        """
        Serialised write transaction.

        Commits when the block exits normally and rolls back on any
        exception, cancellation included. ``immediate=True`` starts with
        ``BEGIN IMMEDIATE`` so no other process can write between this
        transaction's reads and its writes.
        """
        conn = self.connection
        async with self._write_lock:
            try:
                if immediate:
                    await conn.execute("BEGIN IMMEDIATE")
                yield conn
                await conn.commit()
            except BaseException:
                await conn.rollback()
                raise

    @asynccontextmanager
    async def read(self) -> AsyncIterator[aiosqlite.Connection]:
        """Unlocked access for reads; WAL readers never wait on writers."""
        yield self.connection


db_connection = ConnectionManager()
