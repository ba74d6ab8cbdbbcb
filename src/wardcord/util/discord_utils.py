"""
Low-level Discord helpers shared by the automod engine, moderation actions
and job handlers. Every function here is stateless.
"""

from __future__ import annotations

from typing import Optional, Union

import discord

from wardcord.util.logger import get_logger

logger = get_logger("discord_utils")

# Discord rejects a single timeout longer than 28 days
MAX_TIMEOUT_SECONDS = 28 * 24 * 60 * 60

PERMANENT_DURATION = "Permanent"


def is_automod_exempt(member: Union[discord.User, discord.Member]) -> bool:
    """
    Check whether a member bypasses automod entirely.

    Administrators and members who can manage messages are never
    auto-moderated.

    Args:
        member (discord.User | discord.Member): The author to check.

    Returns:
        bool: True if the author is exempt.
    """
    perms = getattr(member, "guild_permissions", None)
    if perms is None:
        return False
    return bool(perms.administrator or perms.manage_messages)


def bot_can_post_embeds(channel: discord.abc.GuildChannel, guild: discord.Guild) -> bool:
    """Return True when the bot may send embeds in ``channel``."""
    me = guild.me
    if me is None:
        return False
    perms = channel.permissions_for(me)
    return bool(perms.send_messages and perms.embed_links)


def format_duration(seconds: Optional[int]) -> str:
    """
    Convert a duration in seconds to a human-readable string.

    Args:
        seconds (int | None): Duration in seconds; falsy means permanent.

    Returns:
        str: Human-readable duration string.
    """
    if not seconds:
        return PERMANENT_DURATION
    if seconds < 60:
        return f"{seconds} secs"
    if seconds < 3600:
        return f"{seconds // 60} mins"
    if seconds < 86400:
        hours = seconds // 3600
        return f"{hours} hour{'s' if hours != 1 else ''}"
    days = seconds // 86400
    return f"{days} day{'s' if days != 1 else ''}"


async def safe_delete_message(message: discord.Message) -> bool:
    """
    Attempt to delete a Discord message, suppressing recoverable errors.

    Args:
        message (discord.Message): The message to delete.

    Returns:
        bool: True if deletion succeeded, False otherwise.
    """
    try:
        await message.delete()
        return True
    except discord.NotFound:
        return False
    except discord.Forbidden:
        logger.warning("No permission to delete message %s", message.id)
    except discord.HTTPException as exc:
        logger.error("Error deleting message %s: %s", message.id, exc)
    return False


async def fetch_member(guild: discord.Guild, user_id: int) -> Optional[discord.Member]:
    """Return the guild member from cache or the API, or None if they left."""
    member = guild.get_member(user_id)
    if member is not None:
        return member
    try:
        return await guild.fetch_member(user_id)
    except discord.NotFound:
        return None


async def fetch_guild_channel(guild: discord.Guild, channel_id: int):
    """Return the channel from cache or the API, or None if it was deleted."""
    channel = guild.get_channel(channel_id)
    if channel is not None:
        return channel
    try:
        return await guild.fetch_channel(channel_id)
    except discord.NotFound:
        return None
