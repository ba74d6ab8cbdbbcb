"""
Infraction records.

Timestamps are stored as INTEGER unix seconds, identifiers as TEXT snowflakes.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class InfractionType(Enum):
    """Kinds of moderation case stored in ``infractions``."""

    WARN = "warn"
    TIMEOUT = "timeout"
    MUTE = "mute"
    KICK = "kick"
    BAN = "ban"
    SOFTBAN = "softban"
    NOTE = "note"

    def __str__(self) -> str:
        return self.value


@dataclass(slots=True)
class Infraction:
    """A single row from the ``infractions`` table."""
    id: int
    guild_id: str
    user_id: str
    moderator_id: str
    type: InfractionType
    reason: Optional[str]
    duration_seconds: Optional[int]
    expires_at: Optional[int]   # unix seconds (UTC)
    active: bool
    created_at: int             # unix seconds (UTC)
    context: Dict[str, Any] = field(default_factory=dict)
    revoked_at: Optional[int] = None
    revoker_id: Optional[str] = None
    # Active warns in the decay window, filled by create_with_count
    warn_count: Optional[int] = None

    @classmethod
    def from_row(cls, row: Any, warn_count: Optional[int] = None) -> "Infraction":
        raw_context = row["context"]
        try:
            context = json.loads(raw_context) if raw_context else {}
        except ValueError:
            context = {}
        return cls(
            id=int(row["id"]),
            guild_id=str(row["guild_id"]),
            user_id=str(row["user_id"]),
            moderator_id=str(row["moderator_id"]),
            type=InfractionType(row["type"]),
            reason=row["reason"],
            duration_seconds=row["duration_seconds"],
            expires_at=row["expires_at"],
            active=bool(row["active"]),
            created_at=int(row["created_at"]),
            context=context,
            revoked_at=row["revoked_at"],
            revoker_id=row["revoker_id"],
            warn_count=warn_count,
        )
