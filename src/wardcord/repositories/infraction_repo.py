"""
Persistent storage for moderation cases.

Warn decay is computed at read time: a warn counts toward escalation while it
is active, not expired and created inside the guild's ``warn_decay_days``
window (a window of zero or less disables decay).
"""

from __future__ import annotations

import json
from typing import Any, Dict, Optional

import aiosqlite

from wardcord.datatypes.infraction_datatypes import Infraction, InfractionType
from wardcord.util.logger import get_logger

logger = get_logger("infraction_repo")

DEFAULT_WARN_DECAY_DAYS = 30

_ACTIVE_WARN_COUNT_SQL = f"""
    WITH decay AS (
        SELECT COALESCE(
            (SELECT warn_decay_days FROM guild_config WHERE guild_id = :guild_id),
            {DEFAULT_WARN_DECAY_DAYS}
        ) AS days
    )
    SELECT COUNT(*)
      FROM infractions i, decay d
     WHERE i.guild_id = :guild_id
       AND i.user_id  = :user_id
       AND i.type     = 'warn'
       AND i.active   = 1
       AND (i.expires_at IS NULL OR i.expires_at > :now)
       AND (d.days <= 0 OR i.created_at >= :now - d.days * 86400)
"""


class InfractionRepository:
    """Low-level CRUD for the ``infractions`` table."""

    @staticmethod
    async def create_with_count(
        conn: aiosqlite.Connection,
        *,
        guild_id: str,
        user_id: str,
        moderator_id: str,
        infraction_type: InfractionType,
        reason: Optional[str],
        duration_seconds: Optional[int],
        context: Optional[Dict[str, Any]],
        now: int,
    ) -> Infraction:
        """Insert an infraction and return it with the user's active warn count.

        Must run inside ``db_connection.transaction(immediate=True)`` so the
        insert and the count see the same snapshot and concurrent warns from
        other processes cannot be undercounted.
        """
        expires_at = now + int(duration_seconds) if duration_seconds else None
        cursor = await conn.execute(
            """
            INSERT INTO infractions (
                guild_id, user_id, moderator_id, type, reason,
                duration_seconds, expires_at, context, created_at, active
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 1)
            RETURNING *
            """,
            (
                str(guild_id),
                str(user_id),
                str(moderator_id),
                infraction_type.value,
                reason,
                duration_seconds,
                expires_at,
                json.dumps(context or {}),
                now,
            ),
        )
        row = await cursor.fetchone()
        await cursor.close()

        warn_count = await InfractionRepository.get_active_warn_count(conn, guild_id, user_id, now)
        return Infraction.from_row(row, warn_count=warn_count)

    @staticmethod
    async def get_active_warn_count(
        conn: aiosqlite.Connection,
        guild_id: str,
        user_id: str,
        now: int,
    ) -> int:
        cursor = await conn.execute(
            _ACTIVE_WARN_COUNT_SQL,
            {"guild_id": str(guild_id), "user_id": str(user_id), "now": now},
        )
        row = await cursor.fetchone()
        return int(row[0]) if row else 0

    @staticmethod
    async def get(conn: aiosqlite.Connection, infraction_id: int) -> Optional[Infraction]:
        cursor = await conn.execute("SELECT * FROM infractions WHERE id = ?", (infraction_id,))
        row = await cursor.fetchone()
        return Infraction.from_row(row) if row else None

    @staticmethod
    async def deactivate(conn: aiosqlite.Connection, infraction_id: int) -> bool:
        """Mark one infraction inactive. Returns True if a row changed."""
        cursor = await conn.execute(
            "UPDATE infractions SET active = 0 WHERE id = ? AND active = 1",
            (infraction_id,),
        )
        return cursor.rowcount > 0

    @staticmethod
    async def deactivate_expired(conn: aiosqlite.Connection, guild_id: str, now: int) -> int:
        """Deactivate the guild's active infractions whose ``expires_at`` has passed."""
        cursor = await conn.execute(
            """
            UPDATE infractions
               SET active = 0
             WHERE guild_id = ?
               AND active = 1
               AND expires_at IS NOT NULL
               AND expires_at <= ?
            """,
            (str(guild_id), now),
        )
        return cursor.rowcount
