import json
import time
from unittest.mock import AsyncMock, MagicMock

import discord
import pytest

from conftest import BOT_ID, make_guild, make_member
from wardcord.datatypes.guild_config import GuildConfig
from wardcord.moderation.mod_actions import DEFAULT_TIMEOUT_SECONDS, SOFTBAN_DELETE_SECONDS, ModActions
from wardcord.repositories.guild_config_repo import GuildConfigRepository
from wardcord.scheduler.job_scheduler import JobScheduler
from wardcord.util.discord_utils import MAX_TIMEOUT_SECONDS

DAY = 86400


@pytest.fixture()
def mod_actions(db, scheduler_settings):
    return ModActions(JobScheduler(None, db, scheduler_settings), db)


async def fetch_all(db, sql, params=()):
    cursor = await db.connection.execute(sql, params)
    return await cursor.fetchall()


async def set_guild_config(db, **kwargs):
    async with db.transaction() as conn:
        await GuildConfigRepository.upsert(conn, GuildConfig(guild_id="1000", **kwargs))


@pytest.mark.asyncio
async def test_timeout_records_infraction_audit_and_reversal(db, mod_actions, guild, member):
    before = int(time.time())
    result = await mod_actions.apply(guild, member, BOT_ID, "timeout", 600, reason="spam", is_auto=True)

    assert result.applied is True
    member.timeout.assert_awaited_once()
    assert member.timeout.call_args.kwargs["reason"] == "Auto-timeout: spam"

    infraction = result.infraction
    assert infraction.type.value == "timeout"
    assert infraction.duration_seconds == 600
    assert infraction.moderator_id == str(BOT_ID)
    assert infraction.context["auto_mod"] is True

    audits = await fetch_all(db, "SELECT * FROM audit_logs")
    assert len(audits) == 1
    assert audits[0]["action_type"] == "Auto-timeout"
    details = json.loads(audits[0]["details"])
    assert details["success"] is True
    assert details["infraction_id"] == infraction.id

    jobs = await fetch_all(db, "SELECT * FROM scheduled_jobs")
    assert [j["type"] for j in jobs] == ["untimeout"]
    assert jobs[0]["infraction_id"] == infraction.id
    assert jobs[0]["user_id"] == str(member.id)
    assert before + 600 <= jobs[0]["run_at"] <= int(time.time()) + 600


@pytest.mark.asyncio
async def test_timeout_defaults_duration(mod_actions, guild, member):
    result = await mod_actions.apply(guild, member, 1, "timeout")
    assert result.applied is True
    assert result.infraction.duration_seconds == DEFAULT_TIMEOUT_SECONDS


@pytest.mark.asyncio
async def test_long_timeout_schedules_renewal(db, mod_actions, guild, member):
    before = int(time.time())
    result = await mod_actions.apply(guild, member, 1, "timeout", 40 * DAY)
    assert result.applied is True

    jobs = {j["type"]: j for j in await fetch_all(db, "SELECT * FROM scheduled_jobs")}
    assert set(jobs) == {"untimeout", "reapply_timeout"}

    reapply = jobs["reapply_timeout"]
    assert reapply["priority"] == 70
    assert before + MAX_TIMEOUT_SECONDS - 60 <= reapply["run_at"] <= int(time.time()) + MAX_TIMEOUT_SECONDS - 60
    ends_at = json.loads(reapply["data"])["ends_at"]
    assert ends_at == jobs["untimeout"]["run_at"]
    assert ends_at >= before + 40 * DAY


@pytest.mark.asyncio
async def test_long_timeout_capped_without_renewal(db, mod_actions, guild, member):
    await set_guild_config(db, timeout_renewal=False)

    result = await mod_actions.apply(guild, member, 1, "timeout", 40 * DAY)
    assert result.applied is True

    jobs = await fetch_all(db, "SELECT * FROM scheduled_jobs")
    assert [j["type"] for j in jobs] == ["untimeout"]
    assert jobs[0]["run_at"] <= int(time.time()) + MAX_TIMEOUT_SECONDS


@pytest.mark.asyncio
async def test_missing_bot_permission(db, mod_actions, member):
    guild = make_guild(moderate_members=False)

    result = await mod_actions.apply(guild, member, 1, "timeout", 600)

    assert result.applied is False
    assert result.infraction is None
    assert result.message == "Bot lacks the moderate_members permission"
    member.timeout.assert_not_awaited()

    assert await fetch_all(db, "SELECT * FROM infractions") == []
    audits = await fetch_all(db, "SELECT * FROM audit_logs")
    details = json.loads(audits[0]["details"])
    assert details["success"] is False
    assert details["error"] == "Bot lacks the moderate_members permission"
    assert await fetch_all(db, "SELECT * FROM scheduled_jobs") == []


@pytest.mark.asyncio
async def test_mute_requires_configured_role(mod_actions, guild, member):
    result = await mod_actions.apply(guild, member, 1, "mute", 600)
    assert result.applied is False
    assert "Mute role is not configured" in result.message
    member.add_roles.assert_not_awaited()


@pytest.mark.asyncio
async def test_mute_with_role_schedules_unmute(db, mod_actions, guild, member):
    await set_guild_config(db, mute_role_id="77")
    role = MagicMock()
    guild.get_role.return_value = role

    result = await mod_actions.apply(guild, member, 1, "mute", 600, reason="noise")

    assert result.applied is True
    guild.get_role.assert_called_with(77)
    member.add_roles.assert_awaited_once_with(role, reason="mute: noise")
    jobs = await fetch_all(db, "SELECT type FROM scheduled_jobs")
    assert [j["type"] for j in jobs] == ["unmute"]


@pytest.mark.asyncio
async def test_permanent_ban_has_no_reversal(db, mod_actions, guild, member):
    result = await mod_actions.apply(guild, member, 1, "ban")
    assert result.applied is True
    member.ban.assert_awaited_once_with(reason="ban", delete_message_seconds=0)
    assert await fetch_all(db, "SELECT * FROM scheduled_jobs") == []


@pytest.mark.asyncio
async def test_softban_bans_and_schedules_unban(db, mod_actions, guild, member):
    before = int(time.time())
    result = await mod_actions.apply(guild, member, 1, "softban", reason="raid")

    assert result.applied is True
    member.ban.assert_awaited_once_with(reason="softban: raid", delete_message_seconds=SOFTBAN_DELETE_SECONDS)
    assert result.infraction.type.value == "softban"
    assert result.infraction.duration_seconds is None

    jobs = await fetch_all(db, "SELECT * FROM scheduled_jobs")
    assert [j["type"] for j in jobs] == ["unban"]
    assert jobs[0]["run_at"] <= before + 2
    assert json.loads(jobs[0]["data"]) == {"reason": "Softban"}


@pytest.mark.asyncio
async def test_discord_forbidden_is_reported(db, mod_actions, guild, member):
    response = MagicMock(status=403, reason="Forbidden")
    member.kick = AsyncMock(side_effect=discord.Forbidden(response, "Missing Permissions"))

    result = await mod_actions.apply(guild, member, 1, "kick")

    assert result.applied is False
    assert result.message == "Missing permissions to kick: Missing Permissions"
    assert await fetch_all(db, "SELECT * FROM infractions") == []


@pytest.mark.asyncio
async def test_unknown_action(mod_actions, guild, member):
    result = await mod_actions.apply(guild, member, 1, "explode")
    assert result.applied is False
    assert result.message == "Unknown action: explode"
