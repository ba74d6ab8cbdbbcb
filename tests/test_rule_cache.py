from unittest.mock import MagicMock, patch

import pytest

from wardcord.datatypes.guild_config import GuildConfig
from wardcord.datatypes.rule_datatypes import RuleType
from wardcord.moderation.rule_cache import RuleConfigCache
from wardcord.repositories.guild_config_repo import GuildConfigRepository
from wardcord.repositories.rule_repo import RuleRepository


async def add_rule(db, name, rule_type, **kwargs):
    async with db.transaction() as conn:
        return await RuleRepository.insert(conn, "g1", name, rule_type, **kwargs)


@pytest.mark.asyncio
async def test_loads_active_rules_in_priority_order(db, state):
    low = await add_rule(db, "low", RuleType.CAPS, priority=10)
    high = await add_rule(db, "high", RuleType.SPAM, priority=90, actions=["delete", "warn"])
    await add_rule(db, "off", RuleType.LINK, enabled=False)

    cache = RuleConfigCache(state, db)
    config = await cache.get_config("g1")

    assert config.enabled is True
    assert [r.id for r in config.rules] == [high, low]
    assert config.rules[0].actions[1].value == "warn"


@pytest.mark.asyncio
async def test_guild_without_row_uses_defaults(db, state):
    config = await RuleConfigCache(state, db).get_config("unknown")
    assert config.enabled is True
    assert config.rules == []


@pytest.mark.asyncio
async def test_disabled_guild(db, state):
    async with db.transaction() as conn:
        await GuildConfigRepository.upsert(conn, GuildConfig(guild_id="g1", auto_mod_enabled=False))
    config = await RuleConfigCache(state, db).get_config("g1")
    assert config.enabled is False


@pytest.mark.asyncio
async def test_second_lookup_is_served_from_cache(db, state):
    await add_rule(db, "r", RuleType.INVITE)
    cache = RuleConfigCache(state, db)
    await cache.get_config("g1")

    with patch.object(RuleRepository, "get_active_rules") as loader:
        await cache.get_config("g1")
    loader.assert_not_called()


@pytest.mark.asyncio
async def test_shared_copy_is_used_by_other_processes(db, state):
    await add_rule(db, "shared", RuleType.KEYWORD, pattern="spam")
    await RuleConfigCache(state, db).get_config("g1")

    other = RuleConfigCache(state, db)
    with patch.object(RuleRepository, "get_active_rules") as loader:
        config = await other.get_config("g1")
    loader.assert_not_called()
    assert config.rules[0].name == "shared"
    assert config.rules[0].pattern == "spam"


@pytest.mark.asyncio
async def test_invalidate_reloads_from_database(db, state):
    cache = RuleConfigCache(state, db)
    assert (await cache.get_config("g1")).rules == []

    await add_rule(db, "new", RuleType.CAPS)
    assert (await cache.get_config("g1")).rules == []

    await cache.invalidate_guild_config("g1")
    config = await cache.get_config("g1")
    assert [r.name for r in config.rules] == ["new"]


@pytest.mark.asyncio
async def test_local_entry_expires_after_ttl(db, state):
    cache = RuleConfigCache(state, db, ttl_seconds=0)
    await cache.get_config("g1")
    assert cache._get_local("g1") is None


def test_invalidation_message_drops_local_copy():
    cache = RuleConfigCache(MagicMock())
    cache._local["g1"] = (0.0, object())
    cache._on_invalidation({"type": "guild_config", "guild_id": "g1"})
    assert "g1" not in cache._local
    cache._on_invalidation({"type": "other"})
