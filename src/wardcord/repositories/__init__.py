"""Static-method repositories over the aiosqlite connection, one per table."""
