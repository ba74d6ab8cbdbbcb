"""
Shared routine for applying timeout, mute, kick, ban and softban.

Used by the automod engine (``is_auto=True``) and by anything that applies a
moderator action on a member. The routine:

- checks the bot has the Discord permission the action needs,
- performs the Discord call,
- records an infraction when the call succeeded,
- writes an audit entry whether or not it succeeded,
- enqueues the job that will reverse a temporary action.

Timeouts longer than Discord's 28 day limit are applied in capped segments
when the guild has ``timeout_renewal`` enabled; a ``reapply_timeout`` job
renews the timeout shortly before each segment ends.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, List, Optional, Union

import aiosqlite
import discord

from wardcord.database.db_connection import ConnectionManager, db_connection
from wardcord.datatypes.action_datatypes import ModAction, ModActionResult
from wardcord.datatypes.guild_config import GuildConfig
from wardcord.datatypes.infraction_datatypes import Infraction, InfractionType
from wardcord.datatypes.job_datatypes import JobPayload, JobType, ReapplyTimeoutPayload, ReversalPayload
from wardcord.repositories.audit_repo import AuditRepository
from wardcord.repositories.guild_config_repo import GuildConfigRepository
from wardcord.repositories.infraction_repo import InfractionRepository
from wardcord.scheduler.job_handlers import REAPPLY_PRIORITY, RENEWAL_LEAD_SECONDS
from wardcord.scheduler.job_scheduler import JobScheduler
from wardcord.util.discord_utils import MAX_TIMEOUT_SECONDS, format_duration
from wardcord.util.errors import ActionConfigurationError
from wardcord.util.logger import get_logger

logger = get_logger("mod_actions")

DEFAULT_TIMEOUT_SECONDS = 300
SOFTBAN_DELETE_SECONDS = 7 * 24 * 60 * 60

# Bot permission each action needs
REQUIRED_PERMISSIONS: Dict[ModAction, str] = {
    ModAction.TIMEOUT: "moderate_members",
    ModAction.MUTE: "manage_roles",
    ModAction.KICK: "kick_members",
    ModAction.BAN: "ban_members",
    ModAction.SOFTBAN: "ban_members",
}


@dataclass(slots=True)
class _PendingJob:
    """A reversal job to enqueue once the infraction id is known."""
    job_type: JobType
    run_at: int
    priority: int = 50
    data: Optional[JobPayload] = None


class ModActions:
    """Applies moderation actions to guild members."""

    def __init__(self, scheduler: JobScheduler, connection: ConnectionManager = db_connection) -> None:
        self.scheduler = scheduler
        self.connection = connection

    async def apply(
        self,
        guild: discord.Guild,
        member: discord.Member,
        actor_id: Union[int, str],
        action: Union[ModAction, str],
        duration_seconds: Optional[int] = None,
        reason: str = "",
        context: Optional[Dict[str, Any]] = None,
        is_auto: bool = False,
    ) -> ModActionResult:
        """
        Apply one moderation action to ``member``.

        Args:
            guild: Guild the member belongs to.
            member: Target member.
            actor_id: Moderator responsible; the bot itself for automod.
            action: Action to apply.
            duration_seconds: Length of a timeout, mute or ban. None or 0
                means permanent for mute and ban.
            reason: Human readable reason, used in the audit log.
            context: Extra data stored on the infraction.
            is_auto: True when automod triggered the action.

        Returns:
            ModActionResult: Whether the action was applied and the infraction it created.
        """
        try:
            mod_action = ModAction(action)
        except ValueError:
            return ModActionResult(applied=False, message=f"Unknown action: {action}")

        prefix = "Auto-" if is_auto else ""
        full_reason = f"{prefix}{mod_action.value}: {reason}" if reason else f"{prefix}{mod_action.value}"
        now = int(time.time())

        pending: List[_PendingJob] = []
        missing = self._missing_permission(guild, mod_action)
        if missing:
            applied, message = False, f"Bot lacks the {missing} permission"
        else:
            async with self.connection.read() as conn:
                guild_config = await GuildConfigRepository.get(conn, str(guild.id))
            try:
                pending = await self._perform(
                    guild, member, mod_action, duration_seconds, full_reason, guild_config, now
                )
                applied, message = True, self._describe(mod_action, member, duration_seconds)
            except ActionConfigurationError as exc:
                applied, message = False, str(exc)
            except discord.Forbidden as exc:
                applied, message = False, f"Missing permissions to {mod_action.value}: {exc.text}"
            except discord.HTTPException as exc:
                applied, message = False, f"Failed to {mod_action.value}: {exc}"

        if not applied:
            logger.warning("[MOD ACTIONS] %s on %s in guild %s failed: %s", mod_action, member.id, guild.id, message)

        infraction = await self._persist(
            guild, member, actor_id, mod_action, duration_seconds, full_reason,
            context, is_auto, applied, message, now,
        )

        for job in pending:
            try:
                await self.scheduler.enqueue(
                    job.job_type,
                    str(guild.id),
                    user_id=str(member.id),
                    infraction_id=infraction.id if infraction else None,
                    run_at=job.run_at,
                    priority=job.priority,
                    data=job.data,
                )
            except aiosqlite.Error as exc:
                logger.error("[MOD ACTIONS] Could not schedule %s for %s: %s", job.job_type, member.id, exc)

        if applied:
            logger.info("[MOD ACTIONS] %s", message)
        return ModActionResult(applied=applied, infraction=infraction, message=message)

    # ------------------------------------------------------------------
    # Discord side
    # ------------------------------------------------------------------

    @staticmethod
    def _missing_permission(guild: discord.Guild, action: ModAction) -> Optional[str]:
        me = guild.me
        perm = REQUIRED_PERMISSIONS[action]
        if me is None or not getattr(me.guild_permissions, perm, False):
            return perm
        return None

    async def _perform(
        self,
        guild: discord.Guild,
        member: discord.Member,
        action: ModAction,
        duration_seconds: Optional[int],
        reason: str,
        guild_config: GuildConfig,
        now: int,
    ) -> List[_PendingJob]:
        """Run the Discord call and return the reversal jobs it needs."""
        if action == ModAction.TIMEOUT:
            return await self._timeout(member, duration_seconds, reason, guild_config, now)

        if action == ModAction.MUTE:
            if not guild_config.mute_role_id:
                raise ActionConfigurationError("Mute role is not configured for this guild")
            role = guild.get_role(int(guild_config.mute_role_id))
            if role is None:
                raise ActionConfigurationError("Configured mute role no longer exists")
            await member.add_roles(role, reason=reason)
            if duration_seconds:
                return [_PendingJob(JobType.UNMUTE, now + duration_seconds)]
            return []

        if action == ModAction.KICK:
            await member.kick(reason=reason)
            return []

        if action == ModAction.BAN:
            await member.ban(reason=reason, delete_message_seconds=0)
            if duration_seconds:
                return [_PendingJob(JobType.UNBAN, now + duration_seconds)]
            return []

        # Softban: ban to purge recent messages, lift the ban right away
        await member.ban(reason=reason, delete_message_seconds=SOFTBAN_DELETE_SECONDS)
        return [_PendingJob(JobType.UNBAN, now + 1, data=ReversalPayload(reason="Softban"))]

    @staticmethod
    async def _timeout(
        member: discord.Member,
        duration_seconds: Optional[int],
        reason: str,
        guild_config: GuildConfig,
        now: int,
    ) -> List[_PendingJob]:
        duration = int(duration_seconds) if duration_seconds else DEFAULT_TIMEOUT_SECONDS
        if duration <= 0:
            raise ActionConfigurationError("Timeout duration must be positive")

        if duration > MAX_TIMEOUT_SECONDS and not guild_config.timeout_renewal:
            logger.debug("[MOD ACTIONS] Timeout of %ds capped at 28 days, renewal disabled", duration)
            duration = MAX_TIMEOUT_SECONDS

        segment = min(duration, MAX_TIMEOUT_SECONDS)
        await member.timeout(discord.utils.utcnow() + timedelta(seconds=segment), reason=reason)

        jobs = [_PendingJob(JobType.UNTIMEOUT, now + duration)]
        if duration > MAX_TIMEOUT_SECONDS:
            jobs.append(
                _PendingJob(
                    JobType.REAPPLY_TIMEOUT,
                    now + MAX_TIMEOUT_SECONDS - RENEWAL_LEAD_SECONDS,
                    priority=REAPPLY_PRIORITY,
                    data=ReapplyTimeoutPayload(ends_at=now + duration),
                )
            )
        return jobs

    @staticmethod
    def _describe(action: ModAction, member: discord.Member, duration_seconds: Optional[int]) -> str:
        if action in (ModAction.KICK, ModAction.SOFTBAN):
            return f"{action.value.capitalize()} applied to {member}"
        if action == ModAction.TIMEOUT:
            duration_seconds = duration_seconds or DEFAULT_TIMEOUT_SECONDS
        return f"{action.value.capitalize()} applied to {member} ({format_duration(duration_seconds)})"

    # ------------------------------------------------------------------
    # Database side
    # ------------------------------------------------------------------

    async def _persist(
        self,
        guild: discord.Guild,
        member: discord.Member,
        actor_id: Union[int, str],
        action: ModAction,
        duration_seconds: Optional[int],
        reason: str,
        context: Optional[Dict[str, Any]],
        is_auto: bool,
        applied: bool,
        message: str,
        now: int,
    ) -> Optional[Infraction]:
        if action == ModAction.TIMEOUT and applied:
            duration_seconds = duration_seconds or DEFAULT_TIMEOUT_SECONDS
        if action == ModAction.SOFTBAN:
            duration_seconds = None

        infraction = None
        try:
            async with self.connection.transaction(immediate=True) as conn:
                if applied:
                    infraction = await InfractionRepository.create_with_count(
                        conn,
                        guild_id=str(guild.id),
                        user_id=str(member.id),
                        moderator_id=str(actor_id),
                        infraction_type=InfractionType(action.value),
                        reason=reason,
                        duration_seconds=duration_seconds or None,
                        context={**(context or {}), "auto_mod": is_auto},
                        now=now,
                    )
                await AuditRepository.log_audit(
                    conn,
                    guild_id=str(guild.id),
                    action_type=f"{'Auto-' if is_auto else ''}{action.value}",
                    actor_id=str(actor_id),
                    target_id=str(member.id),
                    details={
                        "reason": reason,
                        "duration_seconds": duration_seconds,
                        "success": applied,
                        "error": None if applied else message,
                        "infraction_id": infraction.id if infraction else None,
                    },
                    now=now,
                )
        except aiosqlite.Error as exc:
            logger.error("[MOD ACTIONS] Failed to record %s for %s: %s", action, member.id, exc)
            return None
        return infraction
