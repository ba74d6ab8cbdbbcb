"""
Action types and result structures for moderation actions.

This module defines the ModAction enum used by the shared action routine and
the outcome records the automod engine returns to its caller.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from wardcord.datatypes.infraction_datatypes import Infraction


class ModAction(Enum):
    """Enumeration of actions the shared moderation routine can apply."""

    TIMEOUT = "timeout"
    MUTE = "mute"
    KICK = "kick"
    BAN = "ban"
    SOFTBAN = "softban"

    def __str__(self) -> str:
        return self.value


@dataclass(slots=True)
class ModActionResult:
    """What :meth:`ModActions.apply` did.

    Attributes:
        applied: True when the Discord call succeeded.
        infraction: The infraction row created for a successful action.
        message: Human readable summary or the failure reason.
    """
    applied: bool
    infraction: Optional[Infraction] = None
    message: str = ""


@dataclass(slots=True)
class AutoAction:
    """Automatic follow-up chosen by the escalation engine."""
    action: str
    duration_seconds: Optional[int] = None


@dataclass(slots=True)
class ActionOutcome:
    """Outcome of one attempted automod action."""
    action: str
    success: bool
    error: Optional[str] = None
    deleted: int = 0
    infraction_id: Optional[int] = None
    skipped: bool = False
    escalated: bool = False
    # Active warns after a successful warn
    warn_count: Optional[int] = None

    @property
    def label(self) -> str:
        if self.action == "delete" and self.deleted > 1:
            return f"DELETE ({self.deleted})"
        return self.action.upper()


@dataclass(slots=True)
class AutoModResult:
    """Value returned by :meth:`AutoModEngine.handle_message`.

    ``reason`` names why nothing happened (``disabled``, ``exempt``,
    ``no_match`` ...) or ``skipped_cooldown`` when a concurrent pass already
    handled the same violation.
    """
    acted: bool
    reason: Optional[str] = None
    results: List[ActionOutcome] = field(default_factory=list)
