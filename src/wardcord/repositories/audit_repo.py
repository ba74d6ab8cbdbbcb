"""
Persistent storage for the audit trail and per-action automod records.

``audit_logs`` holds one row per moderation event (automod action, manual
action, completed job). ``automod_violations`` holds one row per action the
automod engine attempted, with the violation evidence.
"""

from __future__ import annotations

import json
from typing import Any, Dict, Optional

import aiosqlite


class AuditRepository:
    """Writes for ``audit_logs`` and ``automod_violations``."""

    @staticmethod
    async def log_audit(
        conn: aiosqlite.Connection,
        *,
        guild_id: str,
        action_type: str,
        actor_id: Optional[str],
        target_id: Optional[str],
        details: Dict[str, Any],
        now: int,
    ) -> None:
        await conn.execute(
            "INSERT INTO audit_logs (guild_id, action_type, actor_id, target_id, details, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (
                str(guild_id),
                action_type,
                str(actor_id) if actor_id is not None else None,
                str(target_id) if target_id is not None else None,
                json.dumps(details, default=str),
                now,
            ),
        )

    @staticmethod
    async def record_violation(
        conn: aiosqlite.Connection,
        *,
        guild_id: str,
        user_id: str,
        rule_id: int,
        message_id: str,
        channel_id: str,
        violation_type: str,
        action_taken: str,
        violation_data: Dict[str, Any],
        success: bool,
        error_message: Optional[str],
        now: int,
    ) -> None:
        await conn.execute(
            """
            INSERT INTO automod_violations (
                guild_id, user_id, rule_id, message_id, channel_id, violation_type,
                action_taken, violation_data, success, error_message, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                str(guild_id),
                str(user_id),
                rule_id,
                str(message_id),
                str(channel_id),
                violation_type,
                action_taken,
                json.dumps(violation_data, default=str),
                int(success),
                error_message,
                now,
            ),
        )

    @staticmethod
    async def delete_violations_before(conn: aiosqlite.Connection, cutoff: int) -> int:
        """Delete automod violation rows created before ``cutoff`` (unix seconds)."""
        cursor = await conn.execute(
            "DELETE FROM automod_violations WHERE created_at < ?",
            (cutoff,),
        )
        return cursor.rowcount
