"""
Pytest configuration and fixtures for Wardcord tests.

Database fixtures open a real SQLite file under ``tmp_path`` with the full
schema. Redis is replaced by fakeredis, which implements the sorted set,
``SET NX EX``, pipeline and pub/sub commands the state store uses.
"""

import sys
from datetime import datetime, timezone
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import discord
import fakeredis
import pytest
import pytest_asyncio

# Add src directory to path so imports work
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

from wardcord.configuration.automod_settings import AutoModSettings, SchedulerSettings  # noqa: E402
from wardcord.database.db_connection import ConnectionManager  # noqa: E402
from wardcord.database.db_schema import SchemaManager  # noqa: E402
from wardcord.state.automod_state import AutoModState  # noqa: E402

GUILD_ID = 1000
BOT_ID = 999


# ----------------------------------------------------------------------
# Storage
# ----------------------------------------------------------------------

@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "wardcord.db"


@pytest_asyncio.fixture
async def db(db_path: Path):
    """An open ConnectionManager on a fresh database with the schema applied."""
    manager = ConnectionManager()
    await manager.open(db_path)
    await SchemaManager.initialize_schema(manager.connection)
    yield manager
    await manager.close()


@pytest.fixture()
def redis_server():
    return fakeredis.FakeServer()


@pytest_asyncio.fixture
async def redis_client(redis_server):
    client = fakeredis.FakeAsyncRedis(server=redis_server, decode_responses=True)
    yield client
    await client.aclose()


@pytest_asyncio.fixture
async def state(redis_client):
    automod_state = AutoModState(redis_client)
    yield automod_state
    await automod_state.close()


@pytest.fixture()
def automod_settings() -> AutoModSettings:
    return AutoModSettings({})


@pytest.fixture()
def scheduler_settings() -> SchedulerSettings:
    return SchedulerSettings({"max_attempts": 3, "retry_backoff_seconds": 30, "worker_id": "worker-test"})


# ----------------------------------------------------------------------
# Discord doubles
# ----------------------------------------------------------------------

async def aiter_messages(messages):
    for message in messages:
        yield message


def make_bot_member(**permissions):
    perms = {
        "moderate_members": True,
        "kick_members": True,
        "ban_members": True,
        "manage_roles": True,
    }
    perms.update(permissions)
    return SimpleNamespace(id=BOT_ID, guild_permissions=SimpleNamespace(**perms))


def make_guild(guild_id: int = GUILD_ID, **bot_permissions):
    guild = MagicMock()
    guild.id = guild_id
    guild.name = "Test Guild"
    guild.me = make_bot_member(**bot_permissions)
    guild.get_member = MagicMock(return_value=None)
    guild.fetch_member = AsyncMock()
    guild.get_role = MagicMock(return_value=None)
    return guild


def make_member(user_id: int = 42, *, administrator: bool = False, manage_messages: bool = False, roles=()):
    member = MagicMock()
    member.id = user_id
    member.bot = False
    member.guild_permissions = SimpleNamespace(administrator=administrator, manage_messages=manage_messages)
    member.roles = list(roles)
    member.send = AsyncMock()
    member.timeout = AsyncMock()
    member.remove_timeout = AsyncMock()
    member.kick = AsyncMock()
    member.ban = AsyncMock()
    member.add_roles = AsyncMock()
    member.remove_roles = AsyncMock()
    member.__str__ = MagicMock(return_value=f"member#{user_id}")
    return member


def make_channel(channel_id: int = 555, history=()):
    channel = MagicMock(spec=discord.TextChannel)
    channel.id = channel_id
    channel.send = AsyncMock()
    channel.delete_messages = AsyncMock()
    # One page of history, then an empty page
    channel.history = MagicMock(
        side_effect=lambda **kwargs: aiter_messages(list(history) if kwargs.get("before") is None else [])
    )
    channel.permissions_for = MagicMock(return_value=SimpleNamespace(send_messages=True, embed_links=True))
    return channel


def make_message(
    message_id: int,
    *,
    guild=None,
    channel=None,
    author=None,
    content: str = "hello there",
    mentions=(),
    role_mentions=(),
    created_at=None,
):
    message = MagicMock()
    message.id = message_id
    message.guild = guild
    message.channel = channel
    message.author = author
    message.content = content
    message.mentions = list(mentions)
    message.role_mentions = list(role_mentions)
    message.attachments = []
    message.pinned = False
    message.created_at = created_at or datetime.now(timezone.utc)
    message.is_system = MagicMock(return_value=False)
    message.delete = AsyncMock()
    return message


@pytest.fixture()
def guild():
    return make_guild()


@pytest.fixture()
def member():
    return make_member()
