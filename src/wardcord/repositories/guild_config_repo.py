"""
Persistent storage for per-guild moderation settings.

A guild without a ``guild_config`` row behaves as if it had one with the
column defaults, so reads never fail for unknown guilds.
"""

from __future__ import annotations

import time

import aiosqlite

from wardcord.datatypes.guild_config import GuildConfig
from wardcord.util.logger import get_logger

logger = get_logger("guild_config_repo")


class GuildConfigRepository:
    """Low-level CRUD for the ``guild_config`` table."""

    @staticmethod
    async def get(conn: aiosqlite.Connection, guild_id: str) -> GuildConfig:
        """Return the guild's settings, or the defaults when no row exists."""
        cursor = await conn.execute(
            "SELECT guild_id, auto_mod_enabled, dm_on_action, warn_decay_days, "
            "max_warns, mute_role_id, timeout_renewal "
            "FROM guild_config WHERE guild_id = ?",
            (str(guild_id),),
        )
        row = await cursor.fetchone()
        if row is None:
            return GuildConfig(guild_id=str(guild_id))
        return GuildConfig.from_row(row)

    @staticmethod
    async def ensure(conn: aiosqlite.Connection, guild_id: str) -> None:
        """Insert a default row for the guild if it has none."""
        await conn.execute(
            "INSERT INTO guild_config (guild_id) VALUES (?) ON CONFLICT(guild_id) DO NOTHING",
            (str(guild_id),),
        )

    @staticmethod
    async def upsert(conn: aiosqlite.Connection, config: GuildConfig) -> None:
        """Insert or replace every setting of a guild."""
        await conn.execute(
            """
            INSERT INTO guild_config (
                guild_id, auto_mod_enabled, dm_on_action, warn_decay_days,
                max_warns, mute_role_id, timeout_renewal, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(guild_id) DO UPDATE SET
                auto_mod_enabled = excluded.auto_mod_enabled,
                dm_on_action     = excluded.dm_on_action,
                warn_decay_days  = excluded.warn_decay_days,
                max_warns        = excluded.max_warns,
                mute_role_id     = excluded.mute_role_id,
                timeout_renewal  = excluded.timeout_renewal,
                updated_at       = excluded.updated_at
            """,
            (
                config.guild_id,
                int(config.auto_mod_enabled),
                int(config.dm_on_action),
                config.warn_decay_days,
                config.max_warns,
                config.mute_role_id,
                int(config.timeout_renewal),
                int(time.time()),
            ),
        )
