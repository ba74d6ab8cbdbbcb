"""
Per-guild automod configuration cache.

Lookups go process memory -> Redis -> SQLite. A database load is written back
to both cache layers. Rule editors call :meth:`RuleConfigCache.invalidate_guild_config`
after a write; the invalidation is broadcast so every process drops its local
copy, and the next message reloads from the database.
"""

from __future__ import annotations

import time
from typing import Any, Dict, Optional, Tuple

import aiosqlite

from wardcord.database.db_connection import ConnectionManager, db_connection
from wardcord.datatypes.rule_datatypes import GuildAutoModConfig
from wardcord.repositories.guild_config_repo import GuildConfigRepository
from wardcord.repositories.rule_repo import RuleRepository
from wardcord.state.automod_state import AutoModState
from wardcord.util.logger import get_logger

logger = get_logger("rule_cache")


class RuleConfigCache:
    """
    TTL cache of :class:`GuildAutoModConfig` snapshots.

    The local layer uses the same TTL as the shared Redis entry so a process
    that misses an invalidation message still converges within one TTL.
    """

    def __init__(
        self,
        state: AutoModState,
        connection: ConnectionManager = db_connection,
        ttl_seconds: int = 300,
    ) -> None:
        self.state = state
        self.connection = connection
        self._ttl_seconds = ttl_seconds
        self._local: Dict[str, Tuple[float, GuildAutoModConfig]] = {}

    # ------------------------------------------------------------------
    # Local layer
    # ------------------------------------------------------------------

    def _get_local(self, guild_id: str) -> Optional[GuildAutoModConfig]:
        entry = self._local.get(guild_id)
        if entry is None:
            return None
        stored_at, config = entry
        if time.monotonic() - stored_at >= self._ttl_seconds:
            del self._local[guild_id]
            return None
        return config

    def _set_local(self, config: GuildAutoModConfig) -> None:
        self._local[config.guild_id] = (time.monotonic(), config)

    def drop_local(self, guild_id: str) -> None:
        if self._local.pop(str(guild_id), None) is not None:
            logger.debug("[RULE CACHE] Dropped local config for guild %s", guild_id)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def get_config(self, guild_id: str) -> Optional[GuildAutoModConfig]:
        """Return the guild's automod configuration, or None if it cannot be loaded."""
        guild_id = str(guild_id)
        config = self._get_local(guild_id)
        if config is not None:
            return config

        cached = await self.state.get_guild_config(guild_id)
        if cached is not None:
            try:
                config = GuildAutoModConfig.from_mapping(cached)
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("[RULE CACHE] Ignoring malformed shared config for guild %s: %s", guild_id, exc)
            else:
                self._set_local(config)
                return config

        try:
            async with self.connection.read() as conn:
                guild_config = await GuildConfigRepository.get(conn, guild_id)
                rules = await RuleRepository.get_active_rules(conn, guild_id)
        except aiosqlite.Error as exc:
            logger.error("[RULE CACHE] Failed to load automod config for guild %s: %s", guild_id, exc)
            return None

        config = GuildAutoModConfig(guild_id=guild_id, enabled=guild_config.auto_mod_enabled, rules=rules)
        await self.state.set_guild_config(guild_id, config.to_mapping())
        self._set_local(config)
        logger.debug("[RULE CACHE] Loaded %d rules for guild %s", len(rules), guild_id)
        return config

    async def invalidate_guild_config(self, guild_id: str) -> None:
        """Drop every cached copy of the guild's configuration, in all processes."""
        self.drop_local(str(guild_id))
        await self.state.invalidate_guild_config(str(guild_id))

    def _on_invalidation(self, data: Dict[str, Any]) -> None:
        if data.get("type") == "guild_config" and data.get("guild_id") is not None:
            self.drop_local(str(data["guild_id"]))

    async def start(self) -> None:
        """Subscribe to invalidation broadcasts from other processes."""
        await self.state.subscribe_to_invalidations(self._on_invalidation)
        logger.info("[RULE CACHE] Listening for config invalidations")
