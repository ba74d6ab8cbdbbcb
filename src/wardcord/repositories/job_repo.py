"""
Persistent storage for scheduled jobs.

A job is claimable when ``run_at <= now``, ``attempts < max_attempts``, it is
not marked failed, and it is either unlocked or its lock is older than the
staleness window. Claiming selects and locks in one ``UPDATE ... RETURNING``
statement; callers run it inside ``transaction(immediate=True)`` so workers in
other processes queue on the database write lock instead of reading the same
candidates.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

import aiosqlite

from wardcord.datatypes.job_datatypes import FAILED_MARKER, JobType


class JobRepository:
    """Low-level CRUD for the ``scheduled_jobs`` table."""

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    @staticmethod
    async def insert(
        conn: aiosqlite.Connection,
        *,
        job_type: JobType,
        guild_id: str,
        user_id: Optional[str],
        channel_id: Optional[str],
        infraction_id: Optional[int],
        run_at: int,
        priority: int,
        data: str,
        now: int,
    ) -> aiosqlite.Row:
        cursor = await conn.execute(
            """
            INSERT INTO scheduled_jobs (
                type, guild_id, user_id, channel_id, infraction_id,
                run_at, priority, data, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            RETURNING *
            """,
            (
                job_type.value,
                str(guild_id),
                str(user_id) if user_id is not None else None,
                str(channel_id) if channel_id is not None else None,
                infraction_id,
                run_at,
                priority,
                data,
                now,
            ),
        )
        row = await cursor.fetchone()
        await cursor.close()
        return row

    @staticmethod
    async def claim_due(
        conn: aiosqlite.Connection,
        *,
        worker_id: str,
        now: int,
        limit: int,
        max_attempts: int,
        stale_before: int,
    ) -> List[aiosqlite.Row]:
        """Lock up to ``limit`` eligible jobs for ``worker_id`` and return them.

        Rows come back in claim order: priority descending, then run_at
        ascending, then id.
        """
        cursor = await conn.execute(
            """
            UPDATE scheduled_jobs
               SET locked_at = :now,
                   locked_by = :worker_id,
                   attempts  = attempts + 1
             WHERE id IN (
                    SELECT id
                      FROM scheduled_jobs
                     WHERE run_at <= :now
                       AND attempts < :max_attempts
                       AND (locked_by IS NULL OR locked_by != :failed)
                       AND (locked_at IS NULL OR locked_at < :stale_before)
                     ORDER BY priority DESC, run_at ASC, id ASC
                     LIMIT :limit
                   )
            RETURNING *
            """,
            {
                "now": now,
                "worker_id": worker_id,
                "max_attempts": max_attempts,
                "failed": FAILED_MARKER,
                "stale_before": stale_before,
                "limit": limit,
            },
        )
        rows = list(await cursor.fetchall())
        await cursor.close()
        # RETURNING order is unspecified
        rows.sort(key=lambda r: (-int(r["priority"]), int(r["run_at"]), int(r["id"])))
        return rows

    @staticmethod
    async def fail_abandoned(
        conn: aiosqlite.Connection,
        *,
        now: int,
        max_attempts: int,
        stale_before: int,
    ) -> int:
        """Mark failed the jobs whose worker died during their last allowed attempt."""
        cursor = await conn.execute(
            """
            UPDATE scheduled_jobs
               SET last_error = COALESCE(last_error, 'JobExecutionError: last attempt abandoned by ' || locked_by),
                   locked_by  = :failed,
                   locked_at  = :now
             WHERE attempts >= :max_attempts
               AND locked_by IS NOT NULL
               AND locked_by != :failed
               AND locked_at < :stale_before
            """,
            {"now": now, "failed": FAILED_MARKER, "max_attempts": max_attempts, "stale_before": stale_before},
        )
        return cursor.rowcount

    @staticmethod
    async def delete(conn: aiosqlite.Connection, job_id: int) -> None:
        await conn.execute("DELETE FROM scheduled_jobs WHERE id = ?", (job_id,))

    @staticmethod
    async def record_failure(
        conn: aiosqlite.Connection,
        job_id: int,
        *,
        error: str,
        permanent: bool,
        retry_at: int,
        now: int,
    ) -> None:
        """Store the error, then either release the lock for a retry or mark the job failed."""
        if permanent:
            await conn.execute(
                "UPDATE scheduled_jobs SET last_error = ?, locked_by = ?, locked_at = ? WHERE id = ?",
                (error, FAILED_MARKER, now, job_id),
            )
        else:
            await conn.execute(
                "UPDATE scheduled_jobs SET last_error = ?, locked_by = NULL, locked_at = NULL, run_at = ? "
                "WHERE id = ?",
                (error, retry_at, job_id),
            )

    @staticmethod
    async def delete_old(conn: aiosqlite.Connection, *, cutoff: int, max_attempts: int) -> int:
        """Delete failed, exhausted or abandoned jobs older than ``cutoff``."""
        cursor = await conn.execute(
            """
            DELETE FROM scheduled_jobs
             WHERE (locked_by = :failed AND locked_at < :cutoff)
                OR (attempts >= :max_attempts AND run_at < :cutoff)
                OR (locked_at IS NOT NULL AND locked_at < :cutoff)
            """,
            {"failed": FAILED_MARKER, "cutoff": cutoff, "max_attempts": max_attempts},
        )
        return cursor.rowcount

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @staticmethod
    async def get(conn: aiosqlite.Connection, job_id: int) -> Optional[aiosqlite.Row]:
        cursor = await conn.execute("SELECT * FROM scheduled_jobs WHERE id = ?", (job_id,))
        return await cursor.fetchone()

    @staticmethod
    async def exists_pending(
        conn: aiosqlite.Connection,
        job_type: JobType,
        guild_id: str,
        *,
        user_id: Optional[str] = None,
        exclude_id: Optional[int] = None,
    ) -> bool:
        """
        Return True if a not-yet-failed job of this type exists for the guild.

        ``user_id`` narrows the match to one member; ``exclude_id`` leaves a
        job out, so a running job can look for an already queued follow-up.
        """
        sql = (
            "SELECT 1 FROM scheduled_jobs WHERE type = ? AND guild_id = ? "
            "AND (locked_by IS NULL OR locked_by != ?)"
        )
        params: list = [job_type.value, str(guild_id), FAILED_MARKER]
        if user_id is not None:
            sql += " AND user_id = ?"
            params.append(str(user_id))
        if exclude_id is not None:
            sql += " AND id != ?"
            params.append(int(exclude_id))
        cursor = await conn.execute(sql + " LIMIT 1", params)
        return await cursor.fetchone() is not None

    @staticmethod
    async def stats(
        conn: aiosqlite.Connection,
        guild_id: Optional[str],
        max_attempts: int,
    ) -> Dict[str, Any]:
        guild_filter = "WHERE guild_id = :guild_id" if guild_id is not None else ""
        cursor = await conn.execute(
            f"""
            SELECT
                COALESCE(SUM(CASE WHEN locked_at IS NULL AND locked_by IS NULL THEN 1 ELSE 0 END), 0) AS pending,
                COALESCE(SUM(CASE WHEN locked_at IS NOT NULL AND locked_by != :failed THEN 1 ELSE 0 END), 0) AS processing,
                COALESCE(SUM(CASE WHEN locked_by = :failed THEN 1 ELSE 0 END), 0) AS failed,
                COALESCE(SUM(CASE WHEN attempts > 0 AND attempts < :max_attempts AND locked_at IS NULL THEN 1 ELSE 0 END), 0) AS retrying,
                COUNT(*) AS total
              FROM scheduled_jobs
              {guild_filter}
            """,
            {"failed": FAILED_MARKER, "max_attempts": max_attempts, "guild_id": guild_id},
        )
        row = await cursor.fetchone()
        return {key: int(row[key]) for key in ("pending", "processing", "failed", "retrying", "total")}
