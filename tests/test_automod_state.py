import asyncio
import time
from unittest.mock import AsyncMock, MagicMock

import fakeredis
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from wardcord.state.automod_state import AutoModState, TrackingSignal


def now_ms() -> int:
    return int(time.time() * 1000)


@pytest.mark.asyncio
async def test_count_events_respects_window(state):
    now = now_ms()
    for offset in (0, 1_000, 2_000, 9_000):
        assert await state.record_event("u1", "g1", TrackingSignal.MESSAGE, now - offset)

    assert await state.count_events("u1", "g1", TrackingSignal.MESSAGE, 5_000, now) == 3
    assert await state.count_events("u1", "g1", TrackingSignal.MESSAGE, 10_000, now) == 4
    # Other users and guilds have their own windows
    assert await state.count_events("u2", "g1", TrackingSignal.MESSAGE, 10_000, now) == 0
    assert await state.count_events("u1", "g2", TrackingSignal.MESSAGE, 10_000, now) == 0


@pytest.mark.asyncio
async def test_same_millisecond_events_are_not_collapsed(state):
    now = now_ms()
    await asyncio.gather(*(state.record_event("u1", "g1", TrackingSignal.MESSAGE, now) for _ in range(5)))
    assert await state.count_events("u1", "g1", TrackingSignal.MESSAGE, 1_000, now) == 5


@pytest.mark.asyncio
async def test_record_event_prunes_entries_older_than_ttl(redis_client):
    state = AutoModState(redis_client, tracking_ttl_seconds=10)
    now = now_ms()
    await state.record_event("u1", "g1", TrackingSignal.MESSAGE, now - 60_000)
    await state.record_event("u1", "g1", TrackingSignal.MESSAGE, now)

    key = "automod:spam:g1:u1"
    assert await redis_client.zcard(key) == 1
    assert 0 < await redis_client.ttl(key) <= 10


@pytest.mark.asyncio
async def test_distinct_channel_payloads(state):
    now = now_ms()
    for channel_id in ("c1", "c2", "c1", "c3"):
        await state.record_event("u1", "g1", TrackingSignal.CHANNEL, now, channel_id)

    assert await state.count_distinct_payloads("u1", "g1", TrackingSignal.CHANNEL, 5_000, now) == 3


@pytest.mark.asyncio
async def test_mention_payloads_are_summed(state):
    now = now_ms()
    await state.record_event("u1", "g1", TrackingSignal.MENTIONS, now - 1_000, "2")
    await state.record_event("u1", "g1", TrackingSignal.MENTIONS, now, "3")
    await state.record_event("u1", "g1", TrackingSignal.MENTIONS, now - 20_000, "9")

    assert await state.sum_payload_counts("u1", "g1", TrackingSignal.MENTIONS, 5_000, now) == 5


@pytest.mark.asyncio
async def test_lock_is_exclusive_under_concurrency(state):
    results = await asyncio.gather(*(state.try_acquire_lock("g1", "u1", "warn", 15) for _ in range(10)))
    assert results.count(True) == 1

    await state.release_lock("g1", "u1", "warn")
    assert await state.try_acquire_lock("g1", "u1", "warn", 15) is True
    # Different keys do not contend
    assert await state.try_acquire_lock("g1", "u1", "timeout", 15) is True
    assert await state.try_acquire_lock("g1", "u2", "warn", 15) is True


@pytest.mark.asyncio
async def test_guild_config_cache_roundtrip_and_invalidate(state, redis_client):
    await state.set_guild_config("g1", {"guild_id": "g1", "enabled": True, "rules": []})
    assert await state.get_guild_config("g1") == {"guild_id": "g1", "enabled": True, "rules": []}

    await state.invalidate_guild_config("g1")
    assert await state.get_guild_config("g1") is None


@pytest.mark.asyncio
async def test_malformed_cached_config_is_ignored(state, redis_client):
    await redis_client.set("automod:config:g1", "{not json")
    assert await state.get_guild_config("g1") is None


@pytest.mark.asyncio
async def test_invalidation_is_broadcast(redis_server, redis_client):
    other_client = fakeredis.FakeAsyncRedis(server=redis_server, decode_responses=True)
    listener = AutoModState(other_client)
    received = []
    got_message = asyncio.Event()

    def on_invalidation(data):
        received.append(data)
        got_message.set()

    await listener.subscribe_to_invalidations(on_invalidation)
    try:
        publisher = AutoModState(redis_client)
        await publisher.invalidate_guild_config("g42")
        await asyncio.wait_for(got_message.wait(), timeout=5)
    finally:
        await listener.close()
        await other_client.aclose()

    assert received == [{"type": "guild_config", "guild_id": "g42"}]


@pytest.mark.asyncio
async def test_track_rule_error_counts_recent_errors(state):
    assert await state.track_rule_error("g1", 7, "timeout") == 1
    assert await state.track_rule_error("g1", 7, "timeout") == 2
    assert await state.track_rule_error("g1", 8, "bad pattern") == 1


@pytest.mark.asyncio
async def test_cleanup_and_metrics(state, redis_client):
    now = now_ms()
    # Written directly so the old entry survives until the sweep
    await redis_client.zadd("automod:spam:g1:u1", {f"{now - 600_000}:a:": now - 600_000, f"{now}:b:": now})
    await state.set_guild_config("g1", {"guild_id": "g1", "enabled": True, "rules": []})

    assert await state.cleanup_expired_data() == 1
    assert await redis_client.zcard("automod:spam:g1:u1") == 1

    metrics = await state.get_metrics()
    assert metrics["active_spam_tracking"] == 1
    assert metrics["cached_configs"] == 1
    assert metrics["active_mention_tracking"] == 0


@pytest.mark.asyncio
async def test_redis_errors_degrade_gracefully():
    client = MagicMock()
    client.zcount = AsyncMock(side_effect=RedisConnectionError("down"))
    client.set = AsyncMock(side_effect=RedisConnectionError("down"))
    client.get = AsyncMock(side_effect=RedisConnectionError("down"))
    client.pipeline = MagicMock(side_effect=RedisConnectionError("down"))
    state = AutoModState(client)

    assert await state.count_events("u1", "g1", TrackingSignal.MESSAGE, 5_000) == 0
    assert await state.try_acquire_lock("g1", "u1", "warn", 15) is False
    assert await state.get_guild_config("g1") is None
    assert await state.record_event("u1", "g1", TrackingSignal.MESSAGE) is False
    assert await state.track_rule_error("g1", 1, "x") == 0
