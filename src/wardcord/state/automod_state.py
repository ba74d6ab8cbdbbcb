"""
Redis-backed automod state shared by every bot process.

Sliding-window counters
-----------------------
Each (guild, user, signal) pair owns a sorted set scored by the event time in
unix milliseconds. Members are ``"{ms}:{nonce}:{payload}"`` so two events in
the same millisecond never collapse into one. Every write runs ZADD, a prune
of entries older than the tracking TTL and EXPIRE in one MULTI/EXEC block, so
memory stays bounded without a separate sweeper.

Locks
-----
``try_acquire_lock`` is a single ``SET NX EX``. The TTL is the safety net
when a holder crashes before ``release_lock``.

Failure semantics
-----------------
Redis errors never escape: counts read as 0, lock acquisition reads as "not
acquired", writes report ``False``. Every failure is logged.
"""

from __future__ import annotations

import asyncio
import json
import time
import uuid
from enum import Enum
from typing import Any, Callable, Dict, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from wardcord.util.logger import get_logger

logger = get_logger("automod_state")

KEY_PREFIX = "automod:"
INVALIDATE_CHANNEL = f"{KEY_PREFIX}invalidate"

# Rule error tracking windows (seconds)
RULE_ERROR_RETENTION_SECONDS = 15 * 60
RULE_ERROR_COUNT_WINDOW_SECONDS = 5 * 60


class TrackingSignal(Enum):
    """Kinds of per-user activity recorded for frequency rules."""

    MESSAGE = "spam"
    MENTIONS = "mentions"
    CHANNEL = "channels"

    def __str__(self) -> str:
        return self.value


def _now_ms() -> int:
    return int(time.time() * 1000)


def _member_payload(member: str) -> str:
    parts = member.split(":", 2)
    return parts[2] if len(parts) == 3 else ""


class AutoModState:
    """Counters, locks and config cache over a shared ``redis.asyncio`` client.

    The client must be created with ``decode_responses=True``.
    """

    def __init__(
        self,
        client: redis.Redis,
        *,
        tracking_ttl_seconds: int = 300,
        config_ttl_seconds: int = 300,
    ) -> None:
        self.redis = client
        self.tracking_ttl_seconds = tracking_ttl_seconds
        self.config_ttl_seconds = config_ttl_seconds
        self._pubsub: Any = None
        self._listener: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------

    @staticmethod
    def _tracking_key(signal: TrackingSignal, guild_id: str, user_id: str) -> str:
        return f"{KEY_PREFIX}{signal.value}:{guild_id}:{user_id}"

    @staticmethod
    def _lock_key(guild_id: str, user_id: str, key: str) -> str:
        return f"{KEY_PREFIX}lock:{guild_id}:{user_id}:{key}"

    @staticmethod
    def _config_key(guild_id: str) -> str:
        return f"{KEY_PREFIX}config:{guild_id}"

    # ------------------------------------------------------------------
    # Sliding windows
    # ------------------------------------------------------------------

    async def record_event(
        self,
        user_id: str,
        guild_id: str,
        signal: TrackingSignal,
        timestamp_ms: Optional[int] = None,
        payload: Optional[str] = None,
    ) -> bool:
        """Append an event and prune entries older than the tracking TTL.

        Returns:
            True if the write reached Redis, False otherwise.
        """
        ts = _now_ms() if timestamp_ms is None else int(timestamp_ms)
        key = self._tracking_key(signal, guild_id, user_id)
        member = f"{ts}:{uuid.uuid4().hex[:12]}:{payload if payload is not None else ''}"
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.zadd(key, {member: ts})
                pipe.zremrangebyscore(key, "-inf", ts - self.tracking_ttl_seconds * 1000)
                pipe.expire(key, self.tracking_ttl_seconds)
                await pipe.execute()
            return True
        except RedisError as exc:
            logger.warning("[AUTOMOD STATE] Failed to record %s event for %s in %s: %s", signal, user_id, guild_id, exc)
            return False

    async def count_events(
        self,
        user_id: str,
        guild_id: str,
        signal: TrackingSignal,
        window_ms: int,
        now_ms: Optional[int] = None,
    ) -> int:
        """Number of events in ``[now - window_ms, now]``."""
        now = _now_ms() if now_ms is None else int(now_ms)
        key = self._tracking_key(signal, guild_id, user_id)
        try:
            return int(await self.redis.zcount(key, now - window_ms, now))
        except RedisError as exc:
            logger.warning("[AUTOMOD STATE] Failed to count %s events for %s in %s: %s", signal, user_id, guild_id, exc)
            return 0

    async def _window_payloads(
        self,
        user_id: str,
        guild_id: str,
        signal: TrackingSignal,
        window_ms: int,
        now_ms: Optional[int],
    ) -> list[str]:
        now = _now_ms() if now_ms is None else int(now_ms)
        key = self._tracking_key(signal, guild_id, user_id)
        members = await self.redis.zrangebyscore(key, now - window_ms, now)
        return [_member_payload(m) for m in members]

    async def count_distinct_payloads(
        self,
        user_id: str,
        guild_id: str,
        signal: TrackingSignal,
        window_ms: int,
        now_ms: Optional[int] = None,
    ) -> int:
        """Number of distinct non-empty payloads in the window (channels touched)."""
        try:
            payloads = await self._window_payloads(user_id, guild_id, signal, window_ms, now_ms)
        except RedisError as exc:
            logger.warning("[AUTOMOD STATE] Failed to read %s payloads for %s in %s: %s", signal, user_id, guild_id, exc)
            return 0
        return len({p for p in payloads if p})

    async def sum_payload_counts(
        self,
        user_id: str,
        guild_id: str,
        signal: TrackingSignal,
        window_ms: int,
        now_ms: Optional[int] = None,
    ) -> int:
        """Sum of integer payloads in the window (mentions sent)."""
        try:
            payloads = await self._window_payloads(user_id, guild_id, signal, window_ms, now_ms)
        except RedisError as exc:
            logger.warning("[AUTOMOD STATE] Failed to read %s payloads for %s in %s: %s", signal, user_id, guild_id, exc)
            return 0
        total = 0
        for payload in payloads:
            try:
                total += int(payload)
            except ValueError:
                continue
        return total

    # ------------------------------------------------------------------
    # Locks
    # ------------------------------------------------------------------

    async def try_acquire_lock(self, guild_id: str, user_id: str, key: str, ttl_seconds: int) -> bool:
        """Take the (guild, user, key) lock for ``ttl_seconds``; False if held or on error."""
        try:
            acquired = await self.redis.set(
                self._lock_key(guild_id, user_id, key), str(_now_ms()), nx=True, ex=int(ttl_seconds)
            )
            return bool(acquired)
        except RedisError as exc:
            logger.warning("[AUTOMOD STATE] Failed to acquire lock %s for %s in %s: %s", key, user_id, guild_id, exc)
            return False

    async def release_lock(self, guild_id: str, user_id: str, key: str) -> None:
        try:
            await self.redis.delete(self._lock_key(guild_id, user_id, key))
        except RedisError as exc:
            logger.debug("[AUTOMOD STATE] Failed to release lock %s for %s in %s: %s", key, user_id, guild_id, exc)

    # ------------------------------------------------------------------
    # Guild config cache
    # ------------------------------------------------------------------

    async def get_guild_config(self, guild_id: str) -> Optional[Dict[str, Any]]:
        try:
            raw = await self.redis.get(self._config_key(guild_id))
        except RedisError as exc:
            logger.debug("[AUTOMOD STATE] Failed to read cached config for %s: %s", guild_id, exc)
            return None
        if not raw:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("[AUTOMOD STATE] Dropping malformed cached config for %s", guild_id)
            return None

    async def set_guild_config(self, guild_id: str, config: Dict[str, Any]) -> None:
        try:
            await self.redis.set(self._config_key(guild_id), json.dumps(config), ex=self.config_ttl_seconds)
        except RedisError as exc:
            logger.error("[AUTOMOD STATE] Failed to cache config for %s: %s", guild_id, exc)

    async def invalidate_guild_config(self, guild_id: str) -> None:
        """Delete the shared copy and tell every process to drop its local one."""
        try:
            await self.redis.delete(self._config_key(guild_id))
            await self.redis.publish(
                INVALIDATE_CHANNEL, json.dumps({"type": "guild_config", "guild_id": str(guild_id)})
            )
        except RedisError as exc:
            logger.error("[AUTOMOD STATE] Failed to invalidate config for %s: %s", guild_id, exc)

    async def subscribe_to_invalidations(self, callback: Callable[[Dict[str, Any]], None]) -> None:
        """Run ``callback`` for every invalidation message until :meth:`close`."""
        if self._listener is not None:
            return
        try:
            self._pubsub = self.redis.pubsub(ignore_subscribe_messages=True)
            await self._pubsub.subscribe(INVALIDATE_CHANNEL)
        except RedisError as exc:
            logger.error("[AUTOMOD STATE] Failed to subscribe to invalidations: %s", exc)
            self._pubsub = None
            return
        self._listener = asyncio.create_task(self._listen(callback), name="automod-invalidations")

    async def _listen(self, callback: Callable[[Dict[str, Any]], None]) -> None:
        while True:
            try:
                message = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
            except RedisError as exc:
                logger.warning("[AUTOMOD STATE] Invalidation listener error: %s", exc)
                await asyncio.sleep(1.0)
                continue
            if message is None or message.get("type") != "message":
                continue
            try:
                callback(json.loads(message["data"]))
            except ValueError:
                logger.error("[AUTOMOD STATE] Failed to parse invalidation message %r", message.get("data"))
            except Exception:
                logger.exception("[AUTOMOD STATE] Invalidation callback failed")

    # ------------------------------------------------------------------
    # Rule errors, maintenance, metrics
    # ------------------------------------------------------------------

    async def track_rule_error(self, guild_id: str, rule_id: int, error: str) -> int:
        """Record an evaluator error and return how many the rule raised in the last 5 minutes."""
        now = _now_ms()
        key = f"{KEY_PREFIX}errors:{guild_id}:{rule_id}"
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.zadd(key, {f"{now}:{uuid.uuid4().hex[:12]}:{error[:100]}": now})
                pipe.zremrangebyscore(key, "-inf", now - RULE_ERROR_RETENTION_SECONDS * 1000)
                pipe.expire(key, RULE_ERROR_RETENTION_SECONDS)
                await pipe.execute()
            return int(await self.redis.zcount(key, now - RULE_ERROR_COUNT_WINDOW_SECONDS * 1000, "+inf"))
        except RedisError as exc:
            logger.error("[AUTOMOD STATE] Failed to track error for rule %s in %s: %s", rule_id, guild_id, exc)
            return 0

    async def cleanup_expired_data(self) -> int:
        """Prune stale entries from every tracking key. Returns the number of keys touched."""
        now = _now_ms()
        retention = {signal.value: self.tracking_ttl_seconds for signal in TrackingSignal}
        retention["errors"] = RULE_ERROR_RETENTION_SECONDS

        cleaned = 0
        for kind, seconds in retention.items():
            try:
                async for key in self.redis.scan_iter(match=f"{KEY_PREFIX}{kind}:*", count=500):
                    removed = await self.redis.zremrangebyscore(key, "-inf", now - seconds * 1000)
                    if removed:
                        cleaned += 1
            except RedisError as exc:
                logger.error("[AUTOMOD STATE] Cleanup failed for %s keys: %s", kind, exc)

        if cleaned:
            logger.info("[AUTOMOD STATE] Pruned expired entries from %d keys", cleaned)
        return cleaned

    async def get_metrics(self) -> Optional[Dict[str, int]]:
        """Count active tracking and cached config keys."""
        kinds = {
            "active_spam_tracking": TrackingSignal.MESSAGE.value,
            "active_mention_tracking": TrackingSignal.MENTIONS.value,
            "active_channel_tracking": TrackingSignal.CHANNEL.value,
            "cached_configs": "config",
        }
        metrics: Dict[str, int] = {}
        try:
            for name, kind in kinds.items():
                metrics[name] = 0
                async for _ in self.redis.scan_iter(match=f"{KEY_PREFIX}{kind}:*", count=500):
                    metrics[name] += 1
        except RedisError as exc:
            logger.error("[AUTOMOD STATE] Failed to collect metrics: %s", exc)
            return None
        metrics["timestamp"] = _now_ms()
        return metrics

    async def close(self) -> None:
        """Stop the invalidation listener. The Redis client itself belongs to the caller."""
        if self._listener is not None:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None
        if self._pubsub is not None:
            try:
                await self._pubsub.unsubscribe(INVALIDATE_CHANNEL)
                await self._pubsub.aclose()
            except RedisError as exc:
                logger.debug("[AUTOMOD STATE] Error closing pubsub: %s", exc)
            self._pubsub = None
