"""
Warn escalation.

Maps a user's active warn count to an automatic follow-up action. Guilds
configure thresholds in ``warn_thresholds``; the highest threshold at or
below the count wins. When no threshold is reached the guild's
``max_warns`` setting applies, with a one day timeout.
"""

from __future__ import annotations

from typing import List, Optional

from wardcord.database.db_connection import ConnectionManager, db_connection
from wardcord.datatypes.action_datatypes import AutoAction, ModAction
from wardcord.repositories.guild_config_repo import GuildConfigRepository
from wardcord.repositories.threshold_repo import ThresholdRepository, WarnThreshold
from wardcord.util.errors import ActionConfigurationError
from wardcord.util.logger import get_logger

logger = get_logger("escalation")

FALLBACK_ACTION = ModAction.TIMEOUT
FALLBACK_DURATION_SECONDS = 24 * 60 * 60


class EscalationEngine:
    """Resolves and manages warn thresholds for a guild."""

    def __init__(self, connection: ConnectionManager = db_connection) -> None:
        self.connection = connection

    async def resolve_auto_action(self, guild_id: str, warn_count: int) -> Optional[AutoAction]:
        """
        Return the action a user with ``warn_count`` active warns has earned.

        Args:
            guild_id (str): Guild snowflake.
            warn_count (int): Active (non-decayed) warns including the newest one.

        Returns:
            AutoAction | None: The follow-up action, or None when no threshold applies.
        """
        if warn_count <= 0:
            return None

        guild_id = str(guild_id)
        async with self.connection.read() as conn:
            threshold = await ThresholdRepository.highest_reached(conn, guild_id, warn_count)
            if threshold is not None:
                logger.debug(
                    "[ESCALATION] Guild %s: %d warns reached threshold %d -> %s",
                    guild_id, warn_count, threshold.threshold, threshold.action,
                )
                return AutoAction(threshold.action, threshold.duration_seconds)

            guild_config = await GuildConfigRepository.get(conn, guild_id)

        if guild_config.max_warns > 0 and warn_count >= guild_config.max_warns:
            logger.debug(
                "[ESCALATION] Guild %s: %d warns reached max_warns %d",
                guild_id, warn_count, guild_config.max_warns,
            )
            return AutoAction(FALLBACK_ACTION.value, FALLBACK_DURATION_SECONDS)
        return None

    async def set_threshold(
        self,
        guild_id: str,
        threshold: int,
        action: str,
        duration_seconds: Optional[int] = None,
    ) -> WarnThreshold:
        """Create or replace the action taken when a user reaches ``threshold`` warns."""
        if threshold <= 0:
            raise ActionConfigurationError("Threshold must be a positive warn count.")
        try:
            mod_action = ModAction(action)
        except ValueError as exc:
            raise ActionConfigurationError(f"Unsupported threshold action: {action}") from exc
        if duration_seconds is not None and duration_seconds <= 0:
            duration_seconds = None

        async with self.connection.transaction() as conn:
            await ThresholdRepository.upsert(conn, str(guild_id), threshold, mod_action.value, duration_seconds)

        logger.info(
            "[ESCALATION] Guild %s threshold %d set to %s (duration=%s)",
            guild_id, threshold, mod_action.value, duration_seconds,
        )
        return WarnThreshold(str(guild_id), threshold, mod_action.value, duration_seconds)

    async def list_thresholds(self, guild_id: str) -> List[WarnThreshold]:
        async with self.connection.read() as conn:
            return await ThresholdRepository.list_for_guild(conn, str(guild_id))

    async def remove_threshold(self, guild_id: str, threshold: int) -> bool:
        async with self.connection.transaction() as conn:
            removed = await ThresholdRepository.delete(conn, str(guild_id), threshold)
        if removed:
            logger.info("[ESCALATION] Guild %s threshold %d removed", guild_id, threshold)
        return removed
