"""
Per-rule-type evaluators.

Every rule type maps to one coroutine in :data:`RULE_EVALUATORS`. Evaluators
read message facts from a :class:`MessageSnapshot` and, for frequency rules,
the sliding windows in :class:`AutoModState`. They never write: the engine
records the message's tracking events once before any rule runs, so two
frequency rules on the same guild do not count one message twice.

Regex rules are compiled with the ``regex`` library and matched with a wall
clock timeout. A bad pattern or a timeout raises :class:`RuleEvaluationError`
which the engine logs, counts and treats as no match.
"""

from __future__ import annotations

import string
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import lru_cache
from typing import Awaitable, Callable, Dict, List, Optional

import discord
import regex

from wardcord.datatypes.rule_datatypes import AutoModRule, RuleType, Violation
from wardcord.state.automod_state import AutoModState, TrackingSignal
from wardcord.util.errors import WardcordError

# Platform invite links
INVITE_PATTERN = regex.compile(r"discord(?:app)?\.(?:com/invite|gg)/[\w-]+", regex.IGNORECASE)
# http(s) links that do not point at Discord's own domains
LINK_PATTERN = regex.compile(
    r"https?://(?!(?:discord|cdn\.discord)(?:app)?\.(?:com|gg|net))[^\s<>]+",
    regex.IGNORECASE,
)

CAPS_MIN_LENGTH = 10
CAPS_MIN_LETTERS = 10


class RuleEvaluationError(WardcordError):
    """A rule could not be evaluated (bad pattern, regex timeout)."""


@dataclass(slots=True)
class MessageSnapshot:
    """The message facts rule evaluation needs, read once per message."""
    message_id: str
    guild_id: str
    channel_id: str
    author_id: str
    content: str
    mention_count: int = 0
    attachment_count: int = 0
    role_ids: List[str] = field(default_factory=list)
    created_at: Optional[datetime] = None

    @classmethod
    def from_message(cls, message: discord.Message) -> "MessageSnapshot":
        author = message.author
        return cls(
            message_id=str(message.id),
            guild_id=str(message.guild.id),
            channel_id=str(message.channel.id),
            author_id=str(author.id),
            content=message.content or "",
            mention_count=len(message.mentions) + len(message.role_mentions),
            attachment_count=len(message.attachments),
            role_ids=[str(role.id) for role in getattr(author, "roles", [])],
            created_at=message.created_at or datetime.now(timezone.utc),
        )


@dataclass(slots=True)
class EvaluationContext:
    """Shared inputs of one automod pass."""
    state: AutoModState
    now_ms: int
    regex_timeout_ms: int = 100
    max_regex_length: int = 200


Evaluator = Callable[[AutoModRule, MessageSnapshot, EvaluationContext], Awaitable[Optional[Violation]]]


@lru_cache(maxsize=512)
def compile_pattern(pattern: str) -> regex.Pattern:
    return regex.compile(pattern, regex.IGNORECASE)


# ----------------------------------------------------------------------
# Frequency rules
# ----------------------------------------------------------------------

async def evaluate_spam(rule: AutoModRule, snapshot: MessageSnapshot, ctx: EvaluationContext) -> Optional[Violation]:
    threshold = rule.effective_threshold
    window = rule.effective_window_seconds
    count = await ctx.state.count_events(
        snapshot.author_id, snapshot.guild_id, TrackingSignal.MESSAGE, window * 1000, ctx.now_ms
    )
    if count < threshold:
        return None
    return Violation(RuleType.SPAM, {"message_count": count, "threshold": threshold, "time_window": window})


async def evaluate_channel_spam(rule: AutoModRule, snapshot: MessageSnapshot, ctx: EvaluationContext) -> Optional[Violation]:
    threshold = rule.effective_threshold
    window = rule.effective_window_seconds
    channels = await ctx.state.count_distinct_payloads(
        snapshot.author_id, snapshot.guild_id, TrackingSignal.CHANNEL, window * 1000, ctx.now_ms
    )
    if channels < threshold:
        return None
    return Violation(RuleType.CHANNEL_SPAM, {"channel_count": channels, "threshold": threshold, "time_window": window})


async def evaluate_mention_spam(rule: AutoModRule, snapshot: MessageSnapshot, ctx: EvaluationContext) -> Optional[Violation]:
    threshold = rule.effective_threshold
    window = rule.effective_window_seconds
    current = snapshot.mention_count
    if current >= threshold:
        return Violation(RuleType.MENTION_SPAM, {"mention_count": current, "threshold": threshold})
    if current == 0:
        return None

    total = await ctx.state.sum_payload_counts(
        snapshot.author_id, snapshot.guild_id, TrackingSignal.MENTIONS, window * 1000, ctx.now_ms
    )
    if total < threshold:
        return None
    return Violation(RuleType.MENTION_SPAM, {"total_mentions": total, "threshold": threshold, "time_window": window})


# ----------------------------------------------------------------------
# Content rules
# ----------------------------------------------------------------------

def caps_percentage(text: str) -> Optional[int]:
    """Percentage of uppercase among ASCII letters, or None when the text is too short to judge."""
    if len(text) < CAPS_MIN_LENGTH:
        return None
    letters = [c for c in text if c in string.ascii_letters]
    if len(letters) < CAPS_MIN_LETTERS:
        return None
    upper = sum(1 for c in letters if c in string.ascii_uppercase)
    # Round half up
    return int(upper * 100 / len(letters) + 0.5)


async def evaluate_caps(rule: AutoModRule, snapshot: MessageSnapshot, ctx: EvaluationContext) -> Optional[Violation]:
    pct = caps_percentage(snapshot.content)
    threshold = rule.effective_threshold
    if pct is None or pct < threshold:
        return None
    return Violation(RuleType.CAPS, {"caps_percentage": pct, "threshold": threshold})


async def evaluate_invite(rule: AutoModRule, snapshot: MessageSnapshot, ctx: EvaluationContext) -> Optional[Violation]:
    matches = INVITE_PATTERN.findall(snapshot.content)
    if not matches:
        return None
    return Violation(RuleType.INVITE, {"invite_count": len(matches)})


async def evaluate_link(rule: AutoModRule, snapshot: MessageSnapshot, ctx: EvaluationContext) -> Optional[Violation]:
    matches = LINK_PATTERN.findall(snapshot.content)
    if not matches:
        return None
    return Violation(RuleType.LINK, {"link_count": len(matches)})


async def evaluate_keyword(rule: AutoModRule, snapshot: MessageSnapshot, ctx: EvaluationContext) -> Optional[Violation]:
    if not rule.pattern:
        return None
    terms = [t.strip().lower() for t in rule.pattern.split(",")]
    terms = [t for t in terms if t]
    content = snapshot.content.lower()
    found = [t for t in terms if t in content]
    if not found:
        return None
    return Violation(RuleType.KEYWORD, {"matched": len(found), "terms": found})


async def evaluate_regex(rule: AutoModRule, snapshot: MessageSnapshot, ctx: EvaluationContext) -> Optional[Violation]:
    pattern = rule.pattern
    if not pattern:
        return None
    if len(pattern) > ctx.max_regex_length:
        raise RuleEvaluationError(f"pattern longer than {ctx.max_regex_length} characters")

    try:
        compiled = compile_pattern(pattern)
    except regex.error as exc:
        raise RuleEvaluationError(f"invalid pattern: {exc}") from exc

    try:
        matches = compiled.findall(snapshot.content, timeout=ctx.regex_timeout_ms / 1000)
    except TimeoutError as exc:
        raise RuleEvaluationError(f"pattern timed out after {ctx.regex_timeout_ms}ms") from exc

    if not matches:
        return None
    return Violation(RuleType.REGEX, {"match_count": len(matches)})


RULE_EVALUATORS: Dict[RuleType, Evaluator] = {
    RuleType.SPAM: evaluate_spam,
    RuleType.CHANNEL_SPAM: evaluate_channel_spam,
    RuleType.MENTION_SPAM: evaluate_mention_spam,
    RuleType.CAPS: evaluate_caps,
    RuleType.INVITE: evaluate_invite,
    RuleType.LINK: evaluate_link,
    RuleType.KEYWORD: evaluate_keyword,
    RuleType.REGEX: evaluate_regex,
}


async def evaluate_rule(rule: AutoModRule, snapshot: MessageSnapshot, ctx: EvaluationContext) -> Optional[Violation]:
    """Evaluate one rule against one message.

    Raises:
        RuleEvaluationError: If the rule itself is broken or timed out.
    """
    return await RULE_EVALUATORS[rule.type](rule, snapshot, ctx)
