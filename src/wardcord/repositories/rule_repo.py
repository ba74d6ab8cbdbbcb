"""Persistent storage for automod rules."""

from __future__ import annotations

import json
from typing import List, Optional, Sequence

import aiosqlite

from wardcord.datatypes.rule_datatypes import AutoModRule, RuleType
from wardcord.util.logger import get_logger

logger = get_logger("rule_repo")


class RuleRepository:
    """Low-level CRUD for the ``auto_mod_rules`` table."""

    @staticmethod
    async def get_active_rules(conn: aiosqlite.Connection, guild_id: str) -> List[AutoModRule]:
        """Return enabled, non-quarantined rules, highest priority first, oldest first on ties."""
        cursor = await conn.execute(
            """
            SELECT id, guild_id, name, type, pattern, action, actions, threshold,
                   window_seconds, duration_seconds, exempt_roles, exempt_channels,
                   enabled, quarantined, priority, version
              FROM auto_mod_rules
             WHERE guild_id = ? AND enabled = 1 AND quarantined = 0
             ORDER BY priority DESC, id ASC
            """,
            (str(guild_id),),
        )
        rows = await cursor.fetchall()
        rules = [AutoModRule.from_mapping(row) for row in rows]
        return [rule for rule in rules if rule is not None]

    @staticmethod
    async def insert(
        conn: aiosqlite.Connection,
        guild_id: str,
        name: str,
        rule_type: RuleType,
        *,
        actions: Sequence[str] = ("delete",),
        pattern: Optional[str] = None,
        threshold: Optional[int] = None,
        window_seconds: Optional[int] = None,
        duration_seconds: Optional[int] = None,
        exempt_roles: Sequence[str] = (),
        exempt_channels: Sequence[str] = (),
        priority: int = 50,
        enabled: bool = True,
    ) -> int:
        """Insert a rule and return its id."""
        cursor = await conn.execute(
            """
            INSERT INTO auto_mod_rules (
                guild_id, name, type, pattern, actions, threshold, window_seconds,
                duration_seconds, exempt_roles, exempt_channels, priority, enabled
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                str(guild_id),
                name,
                rule_type.value,
                pattern,
                json.dumps(list(actions)),
                threshold,
                window_seconds,
                duration_seconds,
                json.dumps([str(r) for r in exempt_roles]),
                json.dumps([str(c) for c in exempt_channels]),
                priority,
                int(enabled),
            ),
        )
        return int(cursor.lastrowid)
