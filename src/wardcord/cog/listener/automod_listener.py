"""Automod listener Cog for Wardcord.

This cog has exactly ONE responsibility: forward guild messages to the
AutoModEngine. Detection, locking and actions all live in the engine.
"""

import discord
from discord.ext import commands

from wardcord.moderation.automod_engine import AutoModEngine
from wardcord.util.logger import get_logger

logger = get_logger("automod_listener_cog")


class AutoModListenerCog(commands.Cog):
    """
    Thin event listener that runs every guild message through automod.

    Parameters
    ----------
    bot:
        Discord bot instance.
    engine:
        The automod engine that handles each message.
    """

    def __init__(self, bot: discord.Bot, engine: AutoModEngine) -> None:
        self.bot = bot
        self._engine = engine
        logger.info("[AUTOMOD LISTENER] Automod listener cog loaded")

    @commands.Cog.listener(name="on_message")
    async def on_message(self, message: discord.Message) -> None:
        if message.guild is None or message.author.bot:
            return

        try:
            result = await self._engine.handle_message(message)
        except Exception:
            # Never let one message break the event pipeline
            logger.exception("[AUTOMOD LISTENER] Automod failed on message %s", message.id)
            return

        if result.acted:
            logger.debug(
                "[AUTOMOD LISTENER] Acted on message %s: %s",
                message.id, ", ".join(o.label for o in result.results if o.success),
            )


def setup(bot: discord.Bot, engine: AutoModEngine) -> None:
    """Register the AutoModListenerCog with the bot."""
    bot.add_cog(AutoModListenerCog(bot, engine))
