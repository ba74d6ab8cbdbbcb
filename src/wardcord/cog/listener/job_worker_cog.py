"""Background worker cog for Wardcord.

Polls the ``scheduled_jobs`` table and runs due jobs, and periodically prunes
stale automod tracking keys from Redis. Every bot process runs this cog;
claiming in :class:`JobScheduler` keeps workers from running the same job.
"""

from __future__ import annotations

import asyncio

import discord
from discord.ext import commands, tasks

from wardcord.scheduler.job_scheduler import JobScheduler
from wardcord.state.automod_state import AutoModState
from wardcord.util.logger import get_logger

logger = get_logger("job_worker_cog")

_STATE_CLEANUP_MINUTES = 5


class JobWorkerCog(commands.Cog):
    """
    DB-polling worker for scheduled jobs.

    Design
    ------
    - Jobs are persisted at action time with ``run_at`` as a unix integer.
    - A ``tasks.loop`` calls :meth:`JobScheduler.run_due_jobs` every
      ``poll_interval_seconds`` (set in ``on_ready``).
    - Because state lives in the database, bot restarts are transparent.
    """

    def __init__(self, bot: discord.Bot, scheduler: JobScheduler, state: AutoModState) -> None:
        self.bot = bot
        self.scheduler = scheduler
        self.state = state

    # ------------------------------------------------------------------
    # Cog lifecycle
    # ------------------------------------------------------------------

    @commands.Cog.listener()
    async def on_ready(self) -> None:
        interval = self.scheduler.settings.poll_interval_seconds
        self._poll_task.change_interval(seconds=interval)
        if not self._poll_task.is_running():
            self._poll_task.start()
        if not self._state_cleanup_task.is_running():
            self._state_cleanup_task.start()

        try:
            await self.scheduler.ensure_maintenance_jobs(str(g.id) for g in self.bot.guilds)
        except Exception as exc:
            logger.error("[JOB WORKER] Could not ensure maintenance jobs: %s", exc)
        logger.info("[JOB WORKER] Ready (worker=%s, poll interval=%.1fs)", self.scheduler.worker_id, interval)

    def cog_unload(self) -> None:
        self._poll_task.cancel()
        self._state_cleanup_task.cancel()
        logger.info("[JOB WORKER] Stopped")

    # ------------------------------------------------------------------
    # Loops
    # ------------------------------------------------------------------

    @tasks.loop(seconds=5)  # real interval set in on_ready
    async def _poll_task(self) -> None:
        try:
            processed = await self.scheduler.run_due_jobs()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("[JOB WORKER] Worker pass failed: %s", exc)
            return
        if processed:
            logger.debug("[JOB WORKER] Processed %d job(s)", processed)

    @_poll_task.before_loop
    async def _before_poll(self) -> None:
        await self.bot.wait_until_ready()

    @tasks.loop(minutes=_STATE_CLEANUP_MINUTES)
    async def _state_cleanup_task(self) -> None:
        removed = await self.state.cleanup_expired_data()
        if removed:
            logger.debug("[JOB WORKER] Pruned %d tracking entries", removed)

    @_state_cleanup_task.before_loop
    async def _before_state_cleanup(self) -> None:
        await self.bot.wait_until_ready()


def setup(bot: discord.Bot, scheduler: JobScheduler, state: AutoModState) -> None:
    """Register the JobWorkerCog with the bot."""
    bot.add_cog(JobWorkerCog(bot, scheduler, state))
