"""Persistent storage for warn escalation thresholds."""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional

import aiosqlite


@dataclass
class WarnThreshold:
    """A single row from the ``warn_thresholds`` table."""
    guild_id: str
    threshold: int
    action: str
    duration_seconds: Optional[int]


def _to_threshold(row) -> WarnThreshold:
    return WarnThreshold(
        guild_id=str(row["guild_id"]),
        threshold=int(row["threshold"]),
        action=str(row["action"]),
        duration_seconds=row["duration_seconds"],
    )


class ThresholdRepository:
    """Low-level CRUD for the ``warn_thresholds`` table."""

    @staticmethod
    async def highest_reached(
        conn: aiosqlite.Connection,
        guild_id: str,
        warn_count: int,
    ) -> Optional[WarnThreshold]:
        """Return the highest threshold ``<= warn_count``, or None."""
        cursor = await conn.execute(
            "SELECT guild_id, threshold, action, duration_seconds FROM warn_thresholds "
            "WHERE guild_id = ? AND threshold <= ? ORDER BY threshold DESC LIMIT 1",
            (str(guild_id), warn_count),
        )
        row = await cursor.fetchone()
        return _to_threshold(row) if row else None

    @staticmethod
    async def upsert(
        conn: aiosqlite.Connection,
        guild_id: str,
        threshold: int,
        action: str,
        duration_seconds: Optional[int],
    ) -> None:
        await conn.execute(
            """
            INSERT INTO warn_thresholds (guild_id, threshold, action, duration_seconds)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(guild_id, threshold) DO UPDATE SET
                action           = excluded.action,
                duration_seconds = excluded.duration_seconds
            """,
            (str(guild_id), threshold, action, duration_seconds),
        )

    @staticmethod
    async def list_for_guild(conn: aiosqlite.Connection, guild_id: str) -> List[WarnThreshold]:
        cursor = await conn.execute(
            "SELECT guild_id, threshold, action, duration_seconds FROM warn_thresholds "
            "WHERE guild_id = ? ORDER BY threshold ASC",
            (str(guild_id),),
        )
        return [_to_threshold(row) for row in await cursor.fetchall()]

    @staticmethod
    async def delete(conn: aiosqlite.Connection, guild_id: str, threshold: int) -> bool:
        cursor = await conn.execute(
            "DELETE FROM warn_thresholds WHERE guild_id = ? AND threshold = ?",
            (str(guild_id), threshold),
        )
        return cursor.rowcount > 0
