import asyncio
import json
from unittest.mock import AsyncMock

import discord
import pytest

from conftest import make_channel, make_guild, make_member, make_message
from wardcord.configuration.automod_settings import AutoModSettings
from wardcord.datatypes.guild_config import GuildConfig
from wardcord.datatypes.rule_datatypes import RuleType
from wardcord.moderation.automod_engine import AutoModEngine
from wardcord.moderation.escalation import EscalationEngine
from wardcord.moderation.mod_actions import ModActions
from wardcord.moderation.rule_cache import RuleConfigCache
from wardcord.repositories.guild_config_repo import GuildConfigRepository
from wardcord.repositories.rule_repo import RuleRepository
from wardcord.scheduler.job_scheduler import JobScheduler

GUILD = "1000"


@pytest.fixture()
def make_engine(db, state, scheduler_settings):
    def factory(**settings):
        return AutoModEngine(
            state,
            RuleConfigCache(state, db),
            ModActions(JobScheduler(None, db, scheduler_settings), db),
            EscalationEngine(db),
            AutoModSettings(settings),
            db,
        )
    return factory


@pytest.fixture()
def engine(make_engine):
    return make_engine()


async def add_rule(db, name, rule_type, **kwargs):
    async with db.transaction() as conn:
        return await RuleRepository.insert(conn, GUILD, name, rule_type, **kwargs)


async def fetch_all(db, sql, params=()):
    cursor = await db.connection.execute(sql, params)
    return await cursor.fetchall()


@pytest.mark.asyncio
async def test_spam_burst_is_deleted_and_warned(db, engine):
    await add_rule(db, "Anti-spam", RuleType.SPAM, threshold=5, window_seconds=5, actions=["delete", "warn"])
    guild = make_guild()
    author = make_member(42)
    history = []
    channel = make_channel(history=history)
    messages = [make_message(i, guild=guild, channel=channel, author=author) for i in range(1, 6)]

    for message in messages[:4]:
        result = await engine.handle_message(message)
        assert (result.acted, result.reason) == (False, "no_match")
        history.insert(0, message)

    result = await engine.handle_message(messages[4])

    assert result.acted is True
    assert result.reason is None
    assert [(o.action, o.success) for o in result.results] == [("delete", True), ("warn", True)]
    assert result.results[0].deleted == 5
    assert result.results[1].warn_count == 1

    deleted = channel.delete_messages.call_args.args[0]
    assert deleted[0] is messages[4]
    assert {m.id for m in deleted} == {1, 2, 3, 4, 5}

    infractions = await fetch_all(db, "SELECT * FROM infractions")
    assert [(i["type"], i["user_id"]) for i in infractions] == [("warn", "42")]
    assert json.loads(infractions[0]["context"])["rule_name"] == "Anti-spam"

    audits = await fetch_all(db, "SELECT * FROM audit_logs WHERE action_type = 'automod_violation'")
    warn_rows = [a for a in audits if json.loads(a["details"])["action"] == "warn"]
    assert len(warn_rows) == 1
    assert json.loads(warn_rows[0]["details"])["infraction_id"] == infractions[0]["id"]

    violations = await fetch_all(db, "SELECT action_taken, success FROM automod_violations ORDER BY id")
    assert [(v["action_taken"], v["success"]) for v in violations] == [("delete", 1), ("warn", 1)]

    author.send.assert_awaited_once()
    dm_embed = author.send.call_args.kwargs["embed"]
    assert "Anti-spam" in dm_embed.description
    channel.send.assert_awaited_once()
    assert isinstance(channel.send.call_args.kwargs["embed"], discord.Embed)


@pytest.mark.asyncio
async def test_concurrent_passes_act_once(db, engine):
    await add_rule(db, "Words", RuleType.KEYWORD, pattern="badword", actions=["delete", "warn"])
    guild = make_guild()
    author = make_member(42)
    channel = make_channel()
    first = make_message(1, guild=guild, channel=channel, author=author, content="badword one")
    second = make_message(2, guild=guild, channel=channel, author=author, content="badword two")

    results = await asyncio.gather(engine.handle_message(first), engine.handle_message(second))

    reasons = sorted(str(r.reason) for r in results)
    assert reasons == ["None", "skipped_cooldown"]
    skipped = next(r for r in results if r.reason == "skipped_cooldown")
    assert [o.action for o in skipped.results] == ["delete"]

    infractions = await fetch_all(db, "SELECT * FROM infractions")
    assert len(infractions) == 1
    author.send.assert_awaited_once()


@pytest.mark.asyncio
async def test_cooldown_without_delete_action_does_nothing(db, engine, state):
    rule_id = await add_rule(db, "Words", RuleType.KEYWORD, pattern="badword", actions=["warn"])
    await state.try_acquire_lock(GUILD, "42", f"viol:keyword:{rule_id}", 10)
    message = make_message(
        1, guild=make_guild(), channel=make_channel(), author=make_member(42), content="badword"
    )

    result = await engine.handle_message(message)

    assert (result.acted, result.reason) == (False, "skipped_cooldown")
    assert result.results[0].skipped is True
    message.delete.assert_not_awaited()
    assert await fetch_all(db, "SELECT * FROM infractions") == []


@pytest.mark.asyncio
async def test_held_action_lock_skips_warn(db, engine, state):
    await add_rule(db, "Words", RuleType.KEYWORD, pattern="badword", actions=["delete", "warn"])
    await state.try_acquire_lock(GUILD, "42", "warn", 15)
    message = make_message(
        1, guild=make_guild(), channel=make_channel(), author=make_member(42), content="badword"
    )

    result = await engine.handle_message(message)

    assert result.acted is True
    warn = result.results[1]
    assert (warn.action, warn.success, warn.skipped, warn.error) == ("warn", False, True, "locked")
    assert await fetch_all(db, "SELECT * FROM infractions") == []


@pytest.mark.asyncio
async def test_exempt_member_is_skipped(db, engine):
    await add_rule(db, "Words", RuleType.KEYWORD, pattern="badword")
    message = make_message(
        1, guild=make_guild(), channel=make_channel(), author=make_member(7, manage_messages=True),
        content="badword",
    )
    result = await engine.handle_message(message)
    assert (result.acted, result.reason) == (False, "exempt")


@pytest.mark.asyncio
async def test_rule_exemptions(db, engine):
    await add_rule(db, "Words", RuleType.KEYWORD, pattern="badword", exempt_channels=["555"])
    message = make_message(
        1, guild=make_guild(), channel=make_channel(555), author=make_member(42), content="badword"
    )
    result = await engine.handle_message(message)
    assert result.reason == "no_match"


@pytest.mark.asyncio
async def test_disabled_guild_and_missing_rules(db, engine):
    message = make_message(1, guild=make_guild(), channel=make_channel(), author=make_member(42))
    assert (await engine.handle_message(message)).reason == "disabled"

    await add_rule(db, "Words", RuleType.KEYWORD, pattern="hello")
    async with db.transaction() as conn:
        await GuildConfigRepository.upsert(conn, GuildConfig(guild_id=GUILD, auto_mod_enabled=False))
    await engine.rule_cache.invalidate_guild_config(GUILD)
    assert (await engine.handle_message(message)).reason == "disabled"


@pytest.mark.asyncio
async def test_skips_bots_system_and_empty_messages(engine):
    guild = make_guild()
    bot_author = make_member(5)
    bot_author.bot = True
    assert (await engine.handle_message(make_message(1, guild=guild, author=bot_author))).reason == "bot"

    system = make_message(2, guild=guild, author=make_member(42))
    system.is_system.return_value = True
    assert (await engine.handle_message(system)).reason == "skip"

    assert (await engine.handle_message(make_message(3, guild=None, author=make_member(42)))).reason == "skip"

    empty = make_message(4, guild=guild, author=make_member(42), content="   ")
    assert (await engine.handle_message(empty)).reason == "empty"


@pytest.mark.asyncio
async def test_broken_rule_does_not_block_later_rules(db, engine, redis_client):
    broken = await add_rule(db, "Broken", RuleType.REGEX, pattern="(unclosed", priority=90)
    await add_rule(db, "Words", RuleType.KEYWORD, pattern="badword", priority=10)
    message = make_message(
        1, guild=make_guild(), channel=make_channel(), author=make_member(42), content="badword"
    )

    result = await engine.handle_message(message)

    assert result.acted is True
    assert await redis_client.zcard(f"automod:errors:{GUILD}:{broken}") == 1


@pytest.mark.asyncio
async def test_rule_raising_unexpectedly_does_not_block_later_rules(db, engine, redis_client):
    # Non-numeric threshold makes the spam check raise a plain ValueError
    broken = await add_rule(db, "Spam", RuleType.SPAM, threshold="high", window_seconds=10, priority=90)
    await add_rule(db, "Words", RuleType.KEYWORD, pattern="badword", actions=["warn"], priority=10)
    message = make_message(
        1, guild=make_guild(), channel=make_channel(), author=make_member(42), content="badword"
    )

    result = await engine.handle_message(message)

    assert result.acted is True
    assert [(o.action, o.success) for o in result.results] == [("warn", True)]
    assert await redis_client.zcard(f"automod:errors:{GUILD}:{broken}") == 1


@pytest.mark.asyncio
async def test_warn_escalates_when_enabled(db, make_engine):
    engine = make_engine(escalate_on_warn=True)
    await engine.escalation.set_threshold(GUILD, 1, "timeout", 600)
    await add_rule(db, "Words", RuleType.KEYWORD, pattern="badword", actions=["warn"])
    author = make_member(42)
    message = make_message(1, guild=make_guild(), channel=make_channel(), author=author, content="badword")

    result = await engine.handle_message(message)

    assert [(o.action, o.success, o.escalated) for o in result.results] == [
        ("warn", True, False),
        ("timeout", True, True),
    ]
    author.timeout.assert_awaited_once()
    types = [row["type"] for row in await fetch_all(db, "SELECT type FROM infractions ORDER BY id")]
    assert types == ["warn", "timeout"]
    jobs = await fetch_all(db, "SELECT type FROM scheduled_jobs")
    assert [j["type"] for j in jobs] == ["untimeout"]


@pytest.mark.asyncio
async def test_warn_does_not_escalate_by_default(db, engine):
    await engine.escalation.set_threshold(GUILD, 1, "ban")
    await add_rule(db, "Words", RuleType.KEYWORD, pattern="badword", actions=["warn"])
    author = make_member(42)
    message = make_message(1, guild=make_guild(), channel=make_channel(), author=author, content="badword")

    result = await engine.handle_message(message)

    assert [o.action for o in result.results] == ["warn"]
    author.ban.assert_not_awaited()


@pytest.mark.asyncio
async def test_rule_timeout_action_goes_through_mod_actions(db, engine):
    await add_rule(db, "Links", RuleType.LINK, actions=["timeout"], duration_seconds=120)
    author = make_member(42)
    message = make_message(
        1, guild=make_guild(), channel=make_channel(), author=author, content="https://example.com"
    )

    result = await engine.handle_message(message)

    assert result.results[0].success is True
    audits = await fetch_all(db, "SELECT action_type FROM audit_logs ORDER BY id")
    assert [a["action_type"] for a in audits] == ["Auto-timeout", "automod_violation"]


@pytest.mark.asyncio
async def test_mod_action_crash_does_not_stop_remaining_actions(db, engine):
    engine.mod_actions.apply = AsyncMock(side_effect=RuntimeError("boom"))
    await add_rule(db, "Words", RuleType.KEYWORD, pattern="badword", actions=["timeout", "warn"])
    message = make_message(
        1, guild=make_guild(), channel=make_channel(), author=make_member(42), content="badword"
    )

    result = await engine.handle_message(message)

    assert [(o.action, o.success, o.error) for o in result.results] == [
        ("timeout", False, "boom"),
        ("warn", True, None),
    ]
    assert result.acted is True
    types = [row["type"] for row in await fetch_all(db, "SELECT type FROM infractions")]
    assert types == ["warn"]


@pytest.mark.asyncio
async def test_dm_respects_guild_setting(db, engine):
    async with db.transaction() as conn:
        await GuildConfigRepository.upsert(conn, GuildConfig(guild_id=GUILD, dm_on_action=False))
    await add_rule(db, "Words", RuleType.KEYWORD, pattern="badword")
    author = make_member(42)
    channel = make_channel()
    message = make_message(1, guild=make_guild(), channel=channel, author=author, content="badword")

    result = await engine.handle_message(message)

    assert result.acted is True
    author.send.assert_not_awaited()
    channel.send.assert_awaited_once()
