"""
Automod rule records and the violations they produce.

Rows from ``auto_mod_rules`` are parsed once into :class:`AutoModRule` when a
guild's configuration is loaded. The JSON columns (action list, exemption
lists) and legacy spellings are resolved here so the evaluator and engine
only ever see clean, typed values.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from wardcord.util.logger import get_logger

logger = get_logger("rule_datatypes")


class RuleType(Enum):
    """The closed set of automod rule types."""

    SPAM = "spam"
    CHANNEL_SPAM = "channel_spam"
    MENTION_SPAM = "mention_spam"
    CAPS = "caps"
    INVITE = "invite"
    LINK = "link"
    KEYWORD = "keyword"
    REGEX = "regex"

    def __str__(self) -> str:
        return self.value


class RuleAction(Enum):
    """Actions a rule may list, in the order they should run."""

    DELETE = "delete"
    WARN = "warn"
    TIMEOUT = "timeout"
    KICK = "kick"
    BAN = "ban"

    def __str__(self) -> str:
        return self.value


# Legacy spellings accepted in stored action lists
ACTION_ALIASES = {"mute": RuleAction.TIMEOUT}

# (threshold, window seconds) used when a row leaves them empty
RULE_DEFAULTS: Dict[RuleType, tuple[int, int]] = {
    RuleType.SPAM: (5, 5),
    RuleType.CHANNEL_SPAM: (3, 10),
    RuleType.MENTION_SPAM: (4, 5),
    RuleType.CAPS: (70, 5),
}

VIOLATION_REASONS: Dict[RuleType, str] = {
    RuleType.SPAM: "Message spam",
    RuleType.CHANNEL_SPAM: "Cross-channel spam",
    RuleType.MENTION_SPAM: "Excessive mentions",
    RuleType.CAPS: "Excessive capital letters",
    RuleType.INVITE: "Unauthorized invite",
    RuleType.LINK: "Unauthorized external link",
    RuleType.KEYWORD: "Prohibited content",
    RuleType.REGEX: "Pattern match",
}


def _load_json_list(raw: Any) -> List[Any]:
    if raw is None or raw == "":
        return []
    if isinstance(raw, (list, tuple)):
        return list(raw)
    try:
        value = json.loads(raw)
    except (TypeError, ValueError):
        logger.warning("[RULES] Ignoring malformed JSON list: %r", raw)
        return []
    return value if isinstance(value, list) else []


def normalize_actions(raw_actions: List[Any], rule_id: int | None = None) -> List[RuleAction]:
    """Turn stored action tokens into an ordered, de-duplicated action list.

    ``mute`` maps to ``timeout``. Unknown tokens are dropped with a warning
    and an empty result falls back to ``[delete]`` so a rule never matches
    without doing anything.
    """
    actions: List[RuleAction] = []
    for token in raw_actions:
        text = str(token).strip().lower()
        if not text:
            continue
        action = ACTION_ALIASES.get(text)
        if action is None:
            try:
                action = RuleAction(text)
            except ValueError:
                logger.warning("[RULES] Rule %s lists unknown action %r; dropping it", rule_id, token)
                continue
        if action not in actions:
            actions.append(action)
    return actions or [RuleAction.DELETE]


@dataclass(slots=True)
class AutoModRule:
    """One enabled automod rule of a guild."""

    id: int
    guild_id: str
    name: str
    type: RuleType
    pattern: Optional[str] = None
    threshold: Optional[int] = None
    window_seconds: Optional[int] = None
    duration_seconds: Optional[int] = None
    actions: List[RuleAction] = field(default_factory=lambda: [RuleAction.DELETE])
    exempt_roles: List[str] = field(default_factory=list)
    exempt_channels: List[str] = field(default_factory=list)
    enabled: bool = True
    quarantined: bool = False
    priority: int = 50
    version: int = 1

    @property
    def effective_threshold(self) -> int:
        if self.threshold:
            return int(self.threshold)
        return RULE_DEFAULTS.get(self.type, (1, 5))[0]

    @property
    def effective_window_seconds(self) -> int:
        if self.window_seconds:
            return int(self.window_seconds)
        return RULE_DEFAULTS.get(self.type, (1, 5))[1]

    def has_action(self, action: RuleAction) -> bool:
        return action in self.actions

    def is_exempt(self, channel_id: str, role_ids: List[str]) -> bool:
        """Return True when the channel or any of the roles is exempt from this rule."""
        if channel_id in self.exempt_channels:
            return True
        return any(role_id in self.exempt_roles for role_id in role_ids)

    @classmethod
    def from_mapping(cls, row: Mapping[str, Any]) -> Optional["AutoModRule"]:
        """Build a rule from a database row or a cached mapping.

        Returns ``None`` for rows with an unknown rule type; those are logged
        and skipped rather than failing the whole guild configuration.
        """
        try:
            rule_type = RuleType(str(row["type"]).strip().lower())
        except ValueError:
            logger.warning("[RULES] Rule %s has unknown type %r; skipping", row["id"], row["type"])
            return None

        keys = row.keys()
        raw_actions = _load_json_list(row["actions"]) if "actions" in keys else []
        # Rows written before multi-action support only carry ``action``
        if not raw_actions and "action" in keys and row["action"]:
            raw_actions = [row["action"]]

        return cls(
            id=int(row["id"]),
            guild_id=str(row["guild_id"]),
            name=str(row["name"] or f"Rule {row['id']}"),
            type=rule_type,
            pattern=row["pattern"] if "pattern" in keys else None,
            threshold=row["threshold"] if "threshold" in keys else None,
            window_seconds=row["window_seconds"] if "window_seconds" in keys else None,
            duration_seconds=row["duration_seconds"] if "duration_seconds" in keys else None,
            actions=normalize_actions(raw_actions, row["id"]),
            exempt_roles=[str(r) for r in _load_json_list(row["exempt_roles"] if "exempt_roles" in keys else None)],
            exempt_channels=[str(c) for c in _load_json_list(row["exempt_channels"] if "exempt_channels" in keys else None)],
            enabled=bool(row["enabled"]) if "enabled" in keys else True,
            quarantined=bool(row["quarantined"]) if "quarantined" in keys else False,
            priority=int(row["priority"]) if "priority" in keys and row["priority"] is not None else 50,
            version=int(row["version"]) if "version" in keys and row["version"] is not None else 1,
        )

    def to_mapping(self) -> Dict[str, Any]:
        """Serialise for the shared config cache; the inverse of :meth:`from_mapping`."""
        return {
            "id": self.id,
            "guild_id": self.guild_id,
            "name": self.name,
            "type": self.type.value,
            "pattern": self.pattern,
            "threshold": self.threshold,
            "window_seconds": self.window_seconds,
            "duration_seconds": self.duration_seconds,
            "actions": [a.value for a in self.actions],
            "exempt_roles": list(self.exempt_roles),
            "exempt_channels": list(self.exempt_channels),
            "enabled": self.enabled,
            "quarantined": self.quarantined,
            "priority": self.priority,
            "version": self.version,
        }


@dataclass(slots=True)
class Violation:
    """Result of a rule matching a message. Never persisted as-is."""

    type: RuleType
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def reason(self) -> str:
        return VIOLATION_REASONS.get(self.type, "Rule violation")


@dataclass(slots=True)
class GuildAutoModConfig:
    """Snapshot of a guild's automod switch and its active rules, highest priority first."""

    guild_id: str
    enabled: bool
    rules: List[AutoModRule] = field(default_factory=list)

    def to_mapping(self) -> Dict[str, Any]:
        return {
            "guild_id": self.guild_id,
            "enabled": self.enabled,
            "rules": [rule.to_mapping() for rule in self.rules],
        }

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "GuildAutoModConfig":
        rules = [AutoModRule.from_mapping(r) for r in data.get("rules", [])]
        return cls(
            guild_id=str(data["guild_id"]),
            enabled=bool(data.get("enabled", False)),
            rules=[r for r in rules if r is not None],
        )
