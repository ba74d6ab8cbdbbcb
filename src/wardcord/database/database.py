"""
Database initialization and lifecycle for SQLite.

The Database class coordinates startup and shutdown: it opens the shared
connection held by :data:`db_connection` and applies the schema. Repositories
then work against ``db_connection`` directly.
"""

from __future__ import annotations

from pathlib import Path

import aiosqlite

from wardcord.database.db_connection import ConnectionManager, db_connection
from wardcord.database.db_schema import SchemaManager
from wardcord.util.logger import get_logger

logger = get_logger("database")


class Database:
    """
    Central database coordinator.

    Lifecycle:
        1. Call initialize() at program startup
        2. Repositories use ``db_connection`` for reads and transactions
        3. Call shutdown() at program end
    """

    def __init__(self, connection: ConnectionManager = db_connection):
        self.connection = connection
        self.db_path: Path | None = None
        self._initialized = False

    async def initialize(self, db_path: Path) -> bool:
        """
        Open the database and create the schema.

        Returns:
            True if initialization succeeded, False otherwise
        """
        if self._initialized:
            logger.debug("[DATABASE] Already initialized, skipping")
            return True

        try:
            self.db_path = db_path
            await self.connection.open(db_path)
            await SchemaManager.initialize_schema(self.connection.connection)
            self._initialized = True
            logger.info("[DATABASE] Database initialized at %s", db_path)
            return True
        except (aiosqlite.Error, OSError) as e:
            logger.error("[DATABASE] Database initialization failed: %s", e)
            return False

    async def shutdown(self) -> None:
        """Close the shared connection."""
        if not self._initialized:
            return

        await self.connection.close()
        self._initialized = False
        logger.info("[DATABASE] Database shutdown complete")


# Global Database instance
database = Database()


def get_db() -> Database:
    """
    Get the global Database instance.

    Returns:
        Database: The global Database manager instance.
    """
    return database
