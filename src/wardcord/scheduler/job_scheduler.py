"""
Persistent job scheduler.

Jobs live in the ``scheduled_jobs`` table so they survive restarts and can be
shared by several bot processes pointed at the same database. A worker pass
claims due jobs atomically, runs each through its handler in
:mod:`wardcord.scheduler.job_handlers`, then either retires the job (row
deleted, audit entry written) or records the failure for a later retry.

Delivery is at-least-once: a worker that dies mid-job leaves a lock that goes
stale after ``stale_lock_seconds``, and the job is claimed again. Handlers are
written to be idempotent.
"""

from __future__ import annotations

import os
import socket
import time
from datetime import datetime
from typing import Any, Dict, Iterable, Optional, Union

import aiosqlite
import discord

from wardcord.configuration.app_configuration import app_config
from wardcord.configuration.automod_settings import SchedulerSettings
from wardcord.database.db_connection import ConnectionManager, db_connection
from wardcord.datatypes.job_datatypes import (
    SYSTEM_GUILD_ID,
    JobPayload,
    JobType,
    ScheduledJob,
    dump_payload,
)
from wardcord.repositories.audit_repo import AuditRepository
from wardcord.repositories.job_repo import JobRepository
from wardcord.scheduler.job_handlers import (
    CLEANUP_INTERVAL_SECONDS,
    JOB_HANDLERS,
    MAINTENANCE_PRIORITY,
    JobHandler,
)
from wardcord.util.errors import UnknownJobTypeError
from wardcord.util.logger import get_logger

logger = get_logger("job_scheduler")

DEFAULT_PRIORITY = 50
EXPIRY_SWEEP_DELAY_SECONDS = 60 * 60
MAX_ERROR_LENGTH = 2000


def _default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


def _to_unix(run_at: Union[int, float, datetime, None]) -> Optional[int]:
    if run_at is None:
        return None
    if isinstance(run_at, datetime):
        return int(run_at.timestamp())
    return int(run_at)


class JobScheduler:
    """
    Enqueues, claims and runs scheduled jobs.

    Attributes:
        bot: Discord client handlers use to reach guilds. May be None for
            maintenance-only use.
        connection: Database connection manager.
        settings: Scheduler tunables.
        worker_id: Identity written to ``locked_by`` when claiming.
    """

    def __init__(
        self,
        bot: Optional[discord.Client] = None,
        connection: ConnectionManager = db_connection,
        settings: Optional[SchedulerSettings] = None,
        handlers: Optional[Dict[JobType, JobHandler]] = None,
        worker_id: Optional[str] = None,
    ) -> None:
        self.bot = bot
        self.connection = connection
        self.settings = settings or app_config.scheduler
        self.handlers = handlers if handlers is not None else JOB_HANDLERS
        self.worker_id = worker_id or self.settings.worker_id or _default_worker_id()

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        job_type: JobType,
        guild_id: str,
        *,
        user_id: Optional[str] = None,
        channel_id: Optional[str] = None,
        infraction_id: Optional[int] = None,
        run_at: Union[int, float, datetime, None] = None,
        priority: int = DEFAULT_PRIORITY,
        data: Union[JobPayload, Dict[str, Any], None] = None,
    ) -> ScheduledJob:
        """
        Persist a new job.

        Args:
            job_type (JobType): What to run.
            guild_id (str): Owning guild, or ``"system"`` for global jobs.
            user_id (str | None): Target user, when the job has one.
            channel_id (str | None): Target channel, when the job has one.
            infraction_id (int | None): Infraction the job reverses.
            run_at (int | datetime | None): When to run. Anything not strictly
                in the future runs one second from now.
            priority (int): 0 to 100, higher runs first among due jobs.
            data: Job payload, a payload dataclass or a plain dict.

        Returns:
            ScheduledJob: The stored job.
        """
        now = int(time.time())
        run_at_unix = _to_unix(run_at)
        if run_at_unix is None or run_at_unix <= now:
            if run_at_unix is not None:
                logger.debug("[SCHEDULER] run_at %s is not in the future, running %s in 1s", run_at_unix, job_type)
            run_at_unix = now + 1
        priority = max(0, min(100, int(priority)))

        async with self.connection.transaction() as conn:
            row = await JobRepository.insert(
                conn,
                job_type=job_type,
                guild_id=str(guild_id),
                user_id=user_id,
                channel_id=channel_id,
                infraction_id=infraction_id,
                run_at=run_at_unix,
                priority=priority,
                data=dump_payload(data),
                now=now,
            )

        job = ScheduledJob.from_row(row)
        logger.debug(
            "[SCHEDULER] Enqueued job %s (%s) for guild %s at unix=%d priority=%d",
            job.id, job.type, job.guild_id, job.run_at, job.priority,
        )
        return job

    # ------------------------------------------------------------------
    # Worker pass
    # ------------------------------------------------------------------

    async def run_due_jobs(self, limit: Optional[int] = None) -> int:
        """
        Claim and run up to ``limit`` due jobs.

        Returns:
            int: Number of jobs that completed successfully.
        """
        limit = limit or self.settings.batch_size
        now = int(time.time())

        stale_before = now - self.settings.stale_lock_seconds

        try:
            async with self.connection.transaction(immediate=True) as conn:
                abandoned = await JobRepository.fail_abandoned(
                    conn, now=now, max_attempts=self.settings.max_attempts, stale_before=stale_before
                )
                rows = await JobRepository.claim_due(
                    conn,
                    worker_id=self.worker_id,
                    now=now,
                    limit=limit,
                    max_attempts=self.settings.max_attempts,
                    stale_before=stale_before,
                )
        except aiosqlite.Error as exc:
            logger.error("[SCHEDULER] Failed to claim jobs: %s", exc)
            return 0

        if abandoned:
            logger.warning("[SCHEDULER] Marked %d job(s) failed after their last attempt was abandoned", abandoned)

        if not rows:
            return 0
        logger.debug("[SCHEDULER] %s claimed %d job(s)", self.worker_id, len(rows))

        processed = 0
        for row in rows:
            if await self._run_claimed(row):
                processed += 1
        return processed

    async def _run_claimed(self, row: aiosqlite.Row) -> bool:
        job_id = int(row["id"])
        attempts = int(row["attempts"])

        try:
            job = ScheduledJob.from_row(row)
        except ValueError as exc:
            logger.error("[SCHEDULER] Job %s has an unreadable type or payload: %s", job_id, exc)
            await self._record_failure(job_id, attempts, exc)
            return False

        handler = self.handlers.get(job.type)
        try:
            if handler is None:
                raise UnknownJobTypeError(f"No handler registered for job type {job.type}")
            message = await handler(self, job)
        except Exception as exc:
            logger.error("[SCHEDULER] Job %s (%s) failed on attempt %d: %s", job.id, job.type, attempts, exc)
            await self._record_failure(job.id, attempts, exc)
            return False

        try:
            async with self.connection.transaction() as conn:
                await JobRepository.delete(conn, job.id)
                await AuditRepository.log_audit(
                    conn,
                    guild_id=job.guild_id,
                    action_type=f"job_{job.type.value}",
                    actor_id=self.worker_id,
                    target_id=job.user_id or job.channel_id,
                    details={
                        "job_id": job.id,
                        "type": job.type.value,
                        "message": message,
                        "infraction_id": job.infraction_id,
                        "attempts": job.attempts,
                    },
                    now=int(time.time()),
                )
        except aiosqlite.Error as exc:
            # The lock goes stale and the job runs again
            logger.error("[SCHEDULER] Job %s ran but could not be retired: %s", job.id, exc)
            return False

        logger.info("[SCHEDULER] Job %s (%s) completed: %s", job.id, job.type, message)
        return True

    async def _record_failure(self, job_id: int, attempts: int, exc: BaseException) -> None:
        now = int(time.time())
        error = f"{type(exc).__name__}: {exc}"[:MAX_ERROR_LENGTH]
        permanent = attempts >= self.settings.max_attempts
        retry_at = now + self.settings.retry_backoff_seconds * max(attempts, 1)

        try:
            async with self.connection.transaction() as conn:
                await JobRepository.record_failure(
                    conn, job_id, error=error, permanent=permanent, retry_at=retry_at, now=now
                )
        except aiosqlite.Error as db_exc:
            logger.error("[SCHEDULER] Could not record failure of job %s: %s", job_id, db_exc)
            return

        if permanent:
            logger.warning("[SCHEDULER] Job %s permanently failed after %d attempts", job_id, attempts)
        else:
            logger.debug("[SCHEDULER] Job %s will retry at unix=%d", job_id, retry_at)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def cleanup_old_jobs(self, days_old: Optional[int] = None) -> int:
        """Delete failed or abandoned jobs older than ``days_old`` days."""
        days = self.settings.failed_job_retention_days if days_old is None else days_old
        cutoff = int(time.time()) - days * 86400
        async with self.connection.transaction() as conn:
            deleted = await JobRepository.delete_old(
                conn, cutoff=cutoff, max_attempts=self.settings.max_attempts
            )
        if deleted:
            logger.info("[SCHEDULER] Removed %d old job(s)", deleted)
        return deleted

    async def get_job_stats(self, guild_id: Optional[str] = None) -> Dict[str, int]:
        """Counts of pending, processing, failed and retrying jobs."""
        async with self.connection.read() as conn:
            return await JobRepository.stats(
                conn, str(guild_id) if guild_id is not None else None, self.settings.max_attempts
            )

    async def ensure_maintenance_jobs(self, guild_ids: Iterable[str] = ()) -> int:
        """
        Make sure the recurring maintenance jobs exist.

        Keeps one pending ``cleanup_components`` system job and one pending
        ``cleanup_expired`` job per guild in ``guild_ids``.

        Returns:
            int: Number of jobs enqueued.
        """
        now = int(time.time())
        missing = []
        async with self.connection.read() as conn:
            if not await JobRepository.exists_pending(conn, JobType.CLEANUP_COMPONENTS, SYSTEM_GUILD_ID):
                missing.append((JobType.CLEANUP_COMPONENTS, SYSTEM_GUILD_ID, now + CLEANUP_INTERVAL_SECONDS))
            for guild_id in guild_ids:
                if not await JobRepository.exists_pending(conn, JobType.CLEANUP_EXPIRED, str(guild_id)):
                    missing.append((JobType.CLEANUP_EXPIRED, str(guild_id), now + EXPIRY_SWEEP_DELAY_SECONDS))

        for job_type, guild_id, run_at in missing:
            await self.enqueue(job_type, guild_id, run_at=run_at, priority=MAINTENANCE_PRIORITY)
        if missing:
            logger.info("[SCHEDULER] Enqueued %d maintenance job(s)", len(missing))
        return len(missing)
