"""
Embed creation for automod notifications.

Two embeds are built per acted-on violation: a DM notice for the offending
user and a summary posted in the channel where the violation happened.
"""

from typing import List, Optional

import discord

from wardcord.datatypes.action_datatypes import ActionOutcome
from wardcord.datatypes.rule_datatypes import AutoModRule, RuleType, Violation

DM_NOTICE_TITLE = "🛡️ Auto-Moderation Notice"
DM_NOTICE_COLOR = 0xFFA500
VIOLATION_TITLE = "🛡️ Auto-Moderation Violation"
VIOLATION_COLOR = 0xFF6B6B


def _action_summary(outcomes: List[ActionOutcome]) -> str:
    labels = [o.label for o in outcomes if o.success]
    return " + ".join(labels) if labels else "None"


def _spam_details(violation: Violation) -> Optional[str]:
    if violation.type != RuleType.SPAM:
        return None
    count = violation.details.get("message_count")
    window = violation.details.get("time_window")
    if count is None or window is None:
        return None
    return f"{count} messages in {window}s"


def _deleted_count(outcomes: List[ActionOutcome]) -> int:
    return sum(o.deleted for o in outcomes if o.action == "delete" and o.success)


def build_dm_notice(
    guild: discord.Guild,
    rule: AutoModRule,
    violation: Violation,
    outcomes: List[ActionOutcome],
) -> discord.Embed:
    """
    Create the DM embed sent to a user after automod acted on them.

    Args:
        guild: Guild the violation happened in.
        rule: The rule that fired.
        violation: What the rule detected.
        outcomes: Results of the attempted actions.

    Returns:
        discord.Embed: Formatted embed.
    """
    embed = discord.Embed(
        title=DM_NOTICE_TITLE,
        description=(
            f"Action taken in **{guild.name}**\n"
            f"**Rule:** {rule.name}\n"
            f"**Actions:** {_action_summary(outcomes)}"
        ),
        color=DM_NOTICE_COLOR,
        timestamp=discord.utils.utcnow(),
    )
    details = _spam_details(violation)
    if details:
        embed.add_field(name="Details", value=details, inline=False)
    deleted = _deleted_count(outcomes)
    if deleted:
        embed.add_field(name="Messages Removed", value=str(deleted), inline=False)
    embed.set_footer(text=f"Reason: {violation.reason}")
    return embed


def build_violation_embed(
    author: discord.abc.User,
    rule: AutoModRule,
    violation: Violation,
    outcomes: List[ActionOutcome],
) -> discord.Embed:
    """Create the channel embed summarising one automod violation."""
    embed = discord.Embed(
        title=VIOLATION_TITLE,
        color=VIOLATION_COLOR,
        timestamp=discord.utils.utcnow(),
    )
    embed.add_field(name="User", value=f"<@{author.id}> (`{author.id}`)", inline=True)
    embed.add_field(name="Rule", value=rule.name, inline=True)
    embed.add_field(name="Actions", value=_action_summary(outcomes), inline=True)

    details = _spam_details(violation)
    if details:
        embed.add_field(name="Details", value=details, inline=False)

    failed = [o for o in outcomes if not o.success and not o.skipped]
    if failed:
        embed.add_field(
            name="Failed",
            value=", ".join(o.action.upper() for o in failed),
            inline=False,
        )
    embed.set_footer(text=f"Reason: {violation.reason}")
    return embed
