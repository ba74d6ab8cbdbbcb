"""
Database schema initialization.

Creates the tables and indexes Wardcord reads and writes. Production
deployments may manage the DDL externally; this module keeps local
development databases and tests self-contained.

Timestamps are INTEGER unix seconds and Discord identifiers are TEXT
snowflakes throughout.
"""

import aiosqlite
from wardcord.util.logger import get_logger

logger = get_logger("database_schema")

SCHEMA_VERSION = 1

_NOW = "(CAST(strftime('%s', 'now') AS INTEGER))"


class SchemaManager:
    """Manages database schema creation.

    Every statement is idempotent so the schema can be applied on each start."""

    @staticmethod
    async def initialize_schema(db: aiosqlite.Connection) -> None:
        """
        Create all database tables and indexes if they are missing.

        Args:
            db: Open database connection
        """
        await SchemaManager._create_tables(db)
        await SchemaManager._create_indexes(db)
        await db.execute("INSERT OR IGNORE INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
        await db.commit()
        logger.info("[SCHEMA] Database schema initialized")

    @staticmethod
    async def _create_tables(db: aiosqlite.Connection) -> None:
        """Create all required database tables."""
        await db.execute(f"""
            CREATE TABLE IF NOT EXISTS guild_config (
                guild_id TEXT PRIMARY KEY,
                auto_mod_enabled INTEGER NOT NULL DEFAULT 1,
                dm_on_action INTEGER NOT NULL DEFAULT 1,
                warn_decay_days INTEGER NOT NULL DEFAULT 30,
                max_warns INTEGER NOT NULL DEFAULT 3,
                mute_role_id TEXT,
                timeout_renewal INTEGER NOT NULL DEFAULT 1,
                created_at INTEGER NOT NULL DEFAULT {_NOW},
                updated_at INTEGER NOT NULL DEFAULT {_NOW}
            )
        """)

        # ``action`` is the single-action column of older rows; ``actions``
        # holds the JSON list used since multi-action rules
        await db.execute(f"""
            CREATE TABLE IF NOT EXISTS auto_mod_rules (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                guild_id TEXT NOT NULL,
                name TEXT NOT NULL,
                type TEXT NOT NULL,
                pattern TEXT,
                action TEXT,
                actions TEXT NOT NULL DEFAULT '[]',
                threshold INTEGER,
                window_seconds INTEGER,
                duration_seconds INTEGER,
                exempt_roles TEXT NOT NULL DEFAULT '[]',
                exempt_channels TEXT NOT NULL DEFAULT '[]',
                enabled INTEGER NOT NULL DEFAULT 1,
                quarantined INTEGER NOT NULL DEFAULT 0,
                priority INTEGER NOT NULL DEFAULT 50,
                version INTEGER NOT NULL DEFAULT 1,
                created_at INTEGER NOT NULL DEFAULT {_NOW},
                updated_at INTEGER NOT NULL DEFAULT {_NOW}
            )
        """)

        await db.execute(f"""
            CREATE TABLE IF NOT EXISTS infractions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                guild_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                moderator_id TEXT NOT NULL,
                type TEXT NOT NULL,
                reason TEXT,
                duration_seconds INTEGER,
                expires_at INTEGER,
                active INTEGER NOT NULL DEFAULT 1,
                context TEXT NOT NULL DEFAULT '{{}}',
                revoked_at INTEGER,
                revoker_id TEXT,
                created_at INTEGER NOT NULL DEFAULT {_NOW}
            )
        """)

        await db.execute(f"""
            CREATE TABLE IF NOT EXISTS audit_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                guild_id TEXT NOT NULL,
                action_type TEXT NOT NULL,
                actor_id TEXT,
                target_id TEXT,
                details TEXT NOT NULL DEFAULT '{{}}',
                created_at INTEGER NOT NULL DEFAULT {_NOW}
            )
        """)

        await db.execute(f"""
            CREATE TABLE IF NOT EXISTS scheduled_jobs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                type TEXT NOT NULL,
                guild_id TEXT NOT NULL,
                user_id TEXT,
                channel_id TEXT,
                infraction_id INTEGER,
                run_at INTEGER NOT NULL,
                priority INTEGER NOT NULL DEFAULT 50 CHECK (priority BETWEEN 0 AND 100),
                attempts INTEGER NOT NULL DEFAULT 0,
                last_error TEXT,
                locked_at INTEGER,
                locked_by TEXT,
                data TEXT NOT NULL DEFAULT '{{}}',
                created_at INTEGER NOT NULL DEFAULT {_NOW}
            )
        """)

        await db.execute(f"""
            CREATE TABLE IF NOT EXISTS automod_violations (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                guild_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                rule_id INTEGER,
                message_id TEXT,
                channel_id TEXT,
                violation_type TEXT NOT NULL,
                action_taken TEXT NOT NULL,
                violation_data TEXT NOT NULL DEFAULT '{{}}',
                success INTEGER NOT NULL DEFAULT 0,
                error_message TEXT,
                created_at INTEGER NOT NULL DEFAULT {_NOW}
            )
        """)

        await db.execute("""
            CREATE TABLE IF NOT EXISTS warn_thresholds (
                guild_id TEXT NOT NULL,
                threshold INTEGER NOT NULL CHECK (threshold > 0),
                action TEXT NOT NULL,
                duration_seconds INTEGER,
                PRIMARY KEY (guild_id, threshold)
            )
        """)

        await db.execute(f"""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at INTEGER NOT NULL DEFAULT {_NOW}
            )
        """)

    @staticmethod
    async def _create_indexes(db: aiosqlite.Connection) -> None:
        """Create indexes for the hot lookups."""
        await db.execute("CREATE INDEX IF NOT EXISTS idx_rules_guild ON auto_mod_rules(guild_id, enabled, quarantined, priority DESC)")
        await db.execute("CREATE INDEX IF NOT EXISTS idx_infractions_user ON infractions(guild_id, user_id, type, active)")
        await db.execute("CREATE INDEX IF NOT EXISTS idx_infractions_expiry ON infractions(guild_id, active, expires_at)")
        await db.execute("CREATE INDEX IF NOT EXISTS idx_audit_guild ON audit_logs(guild_id, created_at DESC)")
        await db.execute("CREATE INDEX IF NOT EXISTS idx_jobs_due ON scheduled_jobs(run_at, priority DESC)")
        await db.execute("CREATE INDEX IF NOT EXISTS idx_jobs_locked_by ON scheduled_jobs(locked_by)")
        await db.execute("CREATE INDEX IF NOT EXISTS idx_violations_created ON automod_violations(created_at)")
        await db.execute("CREATE INDEX IF NOT EXISTS idx_violations_user ON automod_violations(guild_id, user_id, created_at DESC)")
