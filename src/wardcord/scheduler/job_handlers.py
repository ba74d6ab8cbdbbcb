"""
Handlers for every scheduled job type.

A handler receives the running :class:`JobScheduler` (for the bot, the
database and follow-up enqueues) and the claimed job. It returns a short
message for the audit log. Raising marks the attempt failed and the job is
retried with backoff. A guild, member, channel or role that no longer exists
is not an error: the handler logs it and returns, and the job is retired.
"""

from __future__ import annotations

import time
from datetime import timedelta
from typing import TYPE_CHECKING, Awaitable, Callable, Dict, Optional

import discord

from wardcord.datatypes.job_datatypes import (
    SYSTEM_GUILD_ID,
    JobType,
    ReapplyTimeoutPayload,
    ReversalPayload,
    ScheduledJob,
)
from wardcord.repositories.audit_repo import AuditRepository
from wardcord.repositories.guild_config_repo import GuildConfigRepository
from wardcord.repositories.infraction_repo import InfractionRepository
from wardcord.repositories.job_repo import JobRepository
from wardcord.util.discord_utils import MAX_TIMEOUT_SECONDS, fetch_guild_channel, fetch_member
from wardcord.util.errors import JobExecutionError
from wardcord.util.logger import get_logger

if TYPE_CHECKING:
    from wardcord.scheduler.job_scheduler import JobScheduler

logger = get_logger("job_handlers")

JobHandler = Callable[["JobScheduler", ScheduledJob], Awaitable[str]]

# Next timeout segment starts this long before the current one expires
RENEWAL_LEAD_SECONDS = 60
REAPPLY_PRIORITY = 70
MAINTENANCE_PRIORITY = 10
CLEANUP_INTERVAL_SECONDS = 24 * 60 * 60


# ----------------------------------------------------------------------
# Lookup helpers
# ----------------------------------------------------------------------

async def _resolve_guild(scheduler: "JobScheduler", job: ScheduledJob) -> Optional[discord.Guild]:
    bot = scheduler.bot
    if bot is None:
        raise JobExecutionError("Discord client is not available")
    guild = bot.get_guild(int(job.guild_id))
    if guild is not None:
        return guild
    try:
        return await bot.fetch_guild(int(job.guild_id))
    except (discord.NotFound, discord.Forbidden):
        logger.warning("[JOBS] Guild %s not found for job %s", job.guild_id, job.id)
        return None


def _reason(job: ScheduledJob, default: str) -> str:
    payload = job.payload
    if isinstance(payload, ReversalPayload) and payload.reason:
        return payload.reason
    return f"{default} (Job #{job.id})"


async def _deactivate_infraction(scheduler: "JobScheduler", job: ScheduledJob) -> None:
    if job.infraction_id is None:
        return
    async with scheduler.connection.transaction() as conn:
        changed = await InfractionRepository.deactivate(conn, int(job.infraction_id))
    if changed:
        logger.debug("[JOBS] Deactivated infraction %s", job.infraction_id)


async def _follow_up_queued(scheduler: "JobScheduler", job: ScheduledJob, job_type: JobType) -> bool:
    """True if an earlier attempt of ``job`` already queued its next run."""
    async with scheduler.connection.read() as conn:
        return await JobRepository.exists_pending(
            conn, job_type, job.guild_id, user_id=job.user_id, exclude_id=job.id
        )


async def _notify_user(scheduler: "JobScheduler", user_id: int, guild: discord.Guild, text: str) -> None:
    """Best-effort DM; a closed DM channel is not a job failure."""
    bot = scheduler.bot
    try:
        user = bot.get_user(user_id) or await bot.fetch_user(user_id)
        await user.send(text)
    except (discord.Forbidden, discord.NotFound):
        logger.debug("[JOBS] Could not DM user %s about %s", user_id, guild.name)
    except discord.HTTPException as exc:
        logger.debug("[JOBS] DM to user %s failed: %s", user_id, exc)


# ----------------------------------------------------------------------
# Reversals
# ----------------------------------------------------------------------

async def handle_unban(scheduler: "JobScheduler", job: ScheduledJob) -> str:
    guild = await _resolve_guild(scheduler, job)
    if guild is None:
        return "Guild not found, skipping unban"

    user = discord.Object(id=int(job.user_id))
    try:
        await guild.fetch_ban(user)
    except discord.NotFound:
        await _deactivate_infraction(scheduler, job)
        return "User not banned, skipping unban"

    try:
        await guild.unban(user, reason=_reason(job, "Temporary ban expired"))
    except discord.NotFound:
        logger.warning("[JOBS] %s not in ban list for guild %s, already unbanned?", job.user_id, guild.id)
    await _deactivate_infraction(scheduler, job)
    await _notify_user(scheduler, int(job.user_id), guild, f"Your ban in **{guild.name}** has expired.")
    return f"Unbanned user {job.user_id}"


async def handle_untimeout(scheduler: "JobScheduler", job: ScheduledJob) -> str:
    guild = await _resolve_guild(scheduler, job)
    if guild is None:
        return "Guild not found, skipping untimeout"

    member = await fetch_member(guild, int(job.user_id))
    if member is None:
        await _deactivate_infraction(scheduler, job)
        return "Member not in guild, skipping untimeout"

    await member.remove_timeout(reason=_reason(job, "Timeout expired"))
    await _deactivate_infraction(scheduler, job)
    return f"Removed timeout from user {job.user_id}"


async def handle_unmute(scheduler: "JobScheduler", job: ScheduledJob) -> str:
    guild = await _resolve_guild(scheduler, job)
    if guild is None:
        return "Guild not found, skipping unmute"

    async with scheduler.connection.read() as conn:
        guild_config = await GuildConfigRepository.get(conn, job.guild_id)
    role = guild.get_role(int(guild_config.mute_role_id)) if guild_config.mute_role_id else None
    if role is None:
        logger.warning("[JOBS] Mute role missing in guild %s, cannot unmute %s", guild.id, job.user_id)
        await _deactivate_infraction(scheduler, job)
        return "Mute role not found, skipping unmute"

    member = await fetch_member(guild, int(job.user_id))
    if member is None:
        await _deactivate_infraction(scheduler, job)
        return "Member not in guild, skipping unmute"

    if role in member.roles:
        await member.remove_roles(role, reason=_reason(job, "Mute expired"))
    await _deactivate_infraction(scheduler, job)
    return f"Unmuted user {job.user_id}"


async def handle_reapply_timeout(scheduler: "JobScheduler", job: ScheduledJob) -> str:
    """Apply the next capped segment of a timeout longer than Discord allows."""
    payload = job.payload
    if not isinstance(payload, ReapplyTimeoutPayload):
        raise JobExecutionError("reapply_timeout job without ends_at")

    now = int(time.time())
    remaining = payload.ends_at - now
    if remaining <= 0:
        return "Timeout already ended"

    guild = await _resolve_guild(scheduler, job)
    if guild is None:
        return "Guild not found, skipping timeout renewal"
    member = await fetch_member(guild, int(job.user_id))
    if member is None:
        return "Member not in guild, skipping timeout renewal"

    segment = min(remaining, MAX_TIMEOUT_SECONDS)
    await member.timeout(
        discord.utils.utcnow() + timedelta(seconds=segment),
        reason=f"Timeout renewal (Job #{job.id})",
    )

    if remaining > MAX_TIMEOUT_SECONDS:
        if await _follow_up_queued(scheduler, job, JobType.REAPPLY_TIMEOUT):
            return f"Renewed timeout for {segment}s, next segment already scheduled"
        await scheduler.enqueue(
            JobType.REAPPLY_TIMEOUT,
            job.guild_id,
            user_id=job.user_id,
            infraction_id=job.infraction_id,
            run_at=now + MAX_TIMEOUT_SECONDS - RENEWAL_LEAD_SECONDS,
            priority=REAPPLY_PRIORITY,
            data=ReapplyTimeoutPayload(ends_at=payload.ends_at),
        )
        return f"Renewed timeout for {segment}s, next segment scheduled"
    return f"Applied final timeout segment of {segment}s"


async def handle_slowmode_end(scheduler: "JobScheduler", job: ScheduledJob) -> str:
    guild = await _resolve_guild(scheduler, job)
    if guild is None:
        return "Guild not found, skipping slowmode end"

    channel = await fetch_guild_channel(guild, int(job.channel_id))
    if channel is None or not hasattr(channel, "slowmode_delay"):
        return "Channel not found, skipping slowmode end"

    await channel.edit(slowmode_delay=0, reason=_reason(job, "Slowmode expired"))
    return f"Disabled slowmode in channel {job.channel_id}"


async def handle_lockdown_end(scheduler: "JobScheduler", job: ScheduledJob) -> str:
    guild = await _resolve_guild(scheduler, job)
    if guild is None:
        return "Guild not found, skipping lockdown end"

    channel = await fetch_guild_channel(guild, int(job.channel_id))
    if channel is None:
        return "Channel not found, skipping lockdown end"

    everyone = guild.default_role
    overwrite = channel.overwrites_for(everyone)
    overwrite.send_messages = None
    await channel.set_permissions(everyone, overwrite=overwrite, reason=_reason(job, "Lockdown expired"))

    # Clearing the channel override falls back to the category's permission
    category = getattr(channel, "category", None)
    if category is not None and category.overwrites_for(everyone).send_messages is False:
        logger.warning(
            "[JOBS] Channel %s unlocked but category %s still denies sending for @everyone",
            channel.id, category.id,
        )
        return f"Ended lockdown in channel {job.channel_id}; category still denies sending"
    return f"Ended lockdown in channel {job.channel_id}"


# ----------------------------------------------------------------------
# Maintenance
# ----------------------------------------------------------------------

async def handle_cleanup_expired(scheduler: "JobScheduler", job: ScheduledJob) -> str:
    now = int(time.time())
    async with scheduler.connection.transaction() as conn:
        count = await InfractionRepository.deactivate_expired(conn, job.guild_id, now)
    return f"Deactivated {count} expired infraction(s)"


async def handle_cleanup_components(scheduler: "JobScheduler", job: ScheduledJob) -> str:
    """Retention sweep of violation rows and dead jobs, then reschedule for tomorrow."""
    now = int(time.time())
    cutoff = now - scheduler.settings.violation_retention_days * 86400
    async with scheduler.connection.transaction() as conn:
        violations = await AuditRepository.delete_violations_before(conn, cutoff)
    jobs = await scheduler.cleanup_old_jobs()
    if scheduler.bot is not None:
        await scheduler.ensure_maintenance_jobs(str(g.id) for g in scheduler.bot.guilds)

    # Last step, so a failed attempt cannot leave tomorrow's run queued twice
    if not await _follow_up_queued(scheduler, job, JobType.CLEANUP_COMPONENTS):
        await scheduler.enqueue(
            JobType.CLEANUP_COMPONENTS,
            SYSTEM_GUILD_ID,
            run_at=now + CLEANUP_INTERVAL_SECONDS,
            priority=MAINTENANCE_PRIORITY,
        )
    return f"Removed {violations} violation(s) and {jobs} old job(s)"


JOB_HANDLERS: Dict[JobType, JobHandler] = {
    JobType.UNBAN: handle_unban,
    JobType.UNTIMEOUT: handle_untimeout,
    JobType.UNMUTE: handle_unmute,
    JobType.REAPPLY_TIMEOUT: handle_reapply_timeout,
    JobType.SLOWMODE_END: handle_slowmode_end,
    JobType.LOCKDOWN_END: handle_lockdown_end,
    JobType.CLEANUP_EXPIRED: handle_cleanup_expired,
    JobType.CLEANUP_COMPONENTS: handle_cleanup_components,
}
