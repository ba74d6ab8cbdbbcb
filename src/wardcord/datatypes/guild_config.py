"""Per-guild moderation settings stored in ``guild_config``."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional


@dataclass(slots=True)
class GuildConfig:
    """Settings of one guild. A guild without a row gets these defaults."""
    guild_id: str
    auto_mod_enabled: bool = True
    dm_on_action: bool = True
    warn_decay_days: int = 30
    max_warns: int = 3
    mute_role_id: Optional[str] = None
    timeout_renewal: bool = True

    @classmethod
    def from_row(cls, row: Any) -> "GuildConfig":
        return cls(
            guild_id=str(row["guild_id"]),
            auto_mod_enabled=bool(row["auto_mod_enabled"]),
            dm_on_action=bool(row["dm_on_action"]),
            warn_decay_days=int(row["warn_decay_days"]),
            max_warns=int(row["max_warns"]),
            mute_role_id=str(row["mute_role_id"]) if row["mute_role_id"] else None,
            timeout_renewal=bool(row["timeout_renewal"]),
        )
