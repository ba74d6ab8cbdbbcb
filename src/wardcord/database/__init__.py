"""
Database package for Wardcord.

Provides the shared aiosqlite connection, schema creation and the
coordinator used at startup and shutdown.

Public API:
    - db_connection: Process-wide ConnectionManager
    - database: Global Database instance
    - get_db: Get the global Database instance
"""
