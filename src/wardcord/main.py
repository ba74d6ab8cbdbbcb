"""
Wardcord
========

Discord auto-moderation bot: rule-based message screening, escalating
sanctions and persistent scheduled reversals, safe to run as several
processes sharing one database and one Redis.
"""

import os
import sys
from pathlib import Path


def resolve_base_dir() -> Path:
    """Determine the base directory of the project.

    Resolution order:
    1. WARDCORD_HOME environment variable, if set.
    2. If running in a frozen/compiled context, use the executable's directory.
    3. Otherwise, assume running from source and use the grandparent of this file's directory.
    """
    if env_home := os.getenv("WARDCORD_HOME"):
        return Path(env_home).resolve()

    if getattr(sys, "frozen", False) or getattr(sys, "compiled", False):
        return Path(sys.argv[0]).resolve().parent

    return Path(__file__).resolve().parents[2]


BASE_DIR = resolve_base_dir()
os.chdir(BASE_DIR)

import asyncio
from dataclasses import dataclass

import discord
import redis.asyncio as redis
from dotenv import load_dotenv
from redis.exceptions import RedisError

from wardcord.configuration.app_configuration import app_config
from wardcord.database.database import get_db
from wardcord.database.db_connection import db_connection
from wardcord.moderation.automod_engine import AutoModEngine
from wardcord.moderation.escalation import EscalationEngine
from wardcord.moderation.mod_actions import ModActions
from wardcord.moderation.rule_cache import RuleConfigCache
from wardcord.scheduler.job_scheduler import JobScheduler
from wardcord.state.automod_state import AutoModState
from wardcord.util.logger import get_logger, handle_exception

logger = get_logger("main")


@dataclass
class Runtime:
    """Everything built at startup that needs closing at shutdown."""
    bot: discord.Bot
    redis_client: redis.Redis
    state: AutoModState
    rule_cache: RuleConfigCache
    scheduler: JobScheduler
    engine: AutoModEngine


def load_environment() -> str:
    """Load environment variables and return the Discord bot token.

    Raises
    ------
    SystemExit
        If the required ``DISCORD_BOT_TOKEN`` variable is missing.
    """
    load_dotenv(dotenv_path=BASE_DIR / ".env")
    token = os.getenv("DISCORD_BOT_TOKEN")
    if not token:
        logger.critical("'DISCORD_BOT_TOKEN' environment variable not set. Bot cannot start.")
        sys.exit(1)
    return token


def build_intents() -> discord.Intents:
    """Construct the intents automod needs: guild messages, their content and members."""
    intents = discord.Intents.default()
    intents.message_content = True
    intents.guilds = True
    intents.messages = True
    intents.members = True
    return intents


async def connect_redis(url: str) -> redis.Redis:
    """Create the shared Redis client and check it answers.

    Raises
    ------
    RedisError
        If Redis cannot be reached.
    """
    client = redis.Redis.from_url(url, decode_responses=True)
    try:
        await client.ping()
    except RedisError:
        await client.aclose()
        raise
    logger.info("Connected to Redis at %s", url)
    return client


def load_cogs(runtime: Runtime) -> None:
    """Register all operational cogs with the bot."""
    from wardcord.cog.listener import automod_listener, job_worker_cog

    automod_listener.setup(runtime.bot, runtime.engine)
    job_worker_cog.setup(runtime.bot, runtime.scheduler, runtime.state)
    logger.info("All cogs loaded successfully.")


async def build_runtime(redis_client: redis.Redis) -> Runtime:
    """Wire state, caches, scheduler, actions and the engine around a new bot."""
    automod_settings = app_config.automod
    bot = discord.Bot(intents=build_intents())

    state = AutoModState(
        redis_client,
        tracking_ttl_seconds=automod_settings.tracking_ttl_seconds,
        config_ttl_seconds=automod_settings.config_cache_ttl_seconds,
    )
    rule_cache = RuleConfigCache(state, db_connection, automod_settings.config_cache_ttl_seconds)
    await rule_cache.start()

    scheduler = JobScheduler(bot, db_connection, app_config.scheduler)
    engine = AutoModEngine(
        state,
        rule_cache,
        ModActions(scheduler, db_connection),
        EscalationEngine(db_connection),
        automod_settings,
        db_connection,
    )
    runtime = Runtime(bot, redis_client, state, rule_cache, scheduler, engine)
    load_cogs(runtime)
    return runtime


async def start_bot(bot: discord.Bot, token: str) -> None:
    """Start the Discord bot and log around the connection lifecycle."""
    logger.info("Attempting to connect to Discord…")
    try:
        await bot.start(token)
    except asyncio.CancelledError:
        logger.info("Discord bot start cancelled; shutting down")
    finally:
        logger.info("Discord bot start routine finished.")


async def shutdown_runtime(runtime: Runtime | None, redis_client: redis.Redis | None) -> None:
    """Close the bot, the invalidation listener, Redis and the database."""
    if runtime is not None:
        if not runtime.bot.is_closed():
            await runtime.bot.close()
        await runtime.state.close()

    if redis_client is not None:
        try:
            await redis_client.aclose()
        except RedisError as exc:
            logger.warning("Error closing Redis client: %s", exc)

    await get_db().shutdown()
    logger.info("Shutdown complete.")


async def async_main() -> int:
    """Bootstrap the database, Redis and the bot, returning an exit code."""
    token = load_environment()

    if not await get_db().initialize(Path(app_config.database_path)):
        logger.critical("Failed to initialize database at %s", app_config.database_path)
        return 1

    redis_client = None
    runtime = None
    exit_code = 0
    try:
        try:
            redis_client = await connect_redis(app_config.redis_url)
        except RedisError as exc:
            logger.critical("Failed to connect to Redis: %s", exc)
            return 1

        runtime = await build_runtime(redis_client)
        try:
            await start_bot(runtime.bot, token)
        except discord.LoginFailure as exc:
            logger.critical("Discord rejected the bot token: %s", exc)
            exit_code = 1
        except Exception as exc:
            logger.critical("Discord bot runtime error: %s", exc)
            exit_code = 1
    finally:
        await shutdown_runtime(runtime, redis_client)

    return exit_code


def main() -> int:
    """Entrypoint that runs the async runtime and returns the process exit code."""
    logger.info("Starting Wardcord…")
    try:
        return asyncio.run(async_main())
    except KeyboardInterrupt:
        logger.info("Shutdown requested by user.")
        return 0
    except SystemExit as exit_exc:
        code = exit_exc.code
        if isinstance(code, int):
            return code
        return 1
    except Exception as exc:
        logger.critical("An unexpected error occurred while running the bot: %s", exc)
        return 1


if __name__ == "__main__":
    sys.excepthook = handle_exception
    sys.exit(main())
