"""
Automod engine: the single entry point for inbound guild messages.

Pass outline for one message:

1. Skip system, DM, bot and empty messages, and members who are globally
   exempt (administrators and message managers).
2. Load the guild's configuration through :class:`RuleConfigCache`.
3. Record the message's tracking events (message, mentions, channel) once.
4. Evaluate the guild's rules in priority order. A broken rule is logged and
   skipped; it never blocks the rules after it.
5. The first matching rule takes a short cooldown lock on its violation
   signature. A concurrent pass that loses the race only deletes its own
   message. The winner runs the rule's actions; stateful actions take a
   second per-action lock so the same member is never punished twice within
   the lock TTL, whichever process saw the message.
6. Every attempted action is persisted as an ``automod_violations`` row and
   an ``audit_logs`` row. The member is notified by DM and the channel gets a
   summary embed; neither can fail the pass.
"""

from __future__ import annotations

import asyncio
import time
from datetime import timedelta
from typing import List, Optional

import aiosqlite
import discord

from wardcord.configuration.app_configuration import app_config
from wardcord.configuration.automod_settings import AutoModSettings
from wardcord.database.db_connection import ConnectionManager, db_connection
from wardcord.datatypes.action_datatypes import ActionOutcome, AutoModResult
from wardcord.datatypes.infraction_datatypes import InfractionType
from wardcord.datatypes.rule_datatypes import AutoModRule, RuleAction, Violation
from wardcord.moderation.automod_embed import build_dm_notice, build_violation_embed
from wardcord.moderation.escalation import EscalationEngine
from wardcord.moderation.mod_actions import DEFAULT_TIMEOUT_SECONDS, ModActions
from wardcord.moderation.rule_cache import RuleConfigCache
from wardcord.moderation.rule_evaluator import (
    EvaluationContext,
    MessageSnapshot,
    RuleEvaluationError,
    evaluate_rule,
)
from wardcord.repositories.audit_repo import AuditRepository
from wardcord.repositories.guild_config_repo import GuildConfigRepository
from wardcord.repositories.infraction_repo import InfractionRepository
from wardcord.state.automod_state import AutoModState, TrackingSignal
from wardcord.util.discord_utils import bot_can_post_embeds, is_automod_exempt, safe_delete_message
from wardcord.util.logger import get_logger

logger = get_logger("automod_engine")

HISTORY_PAGE_SIZE = 100
FETCH_PAGE_DELAY_SECONDS = 0.12
DELETE_FALLBACK_DELAY_SECONDS = 0.1


class AutoModEngine:
    """
    Detects rule violations and applies the configured actions.

    Attributes:
        state: Shared Redis state (sliding windows, locks).
        rule_cache: Guild configuration cache.
        mod_actions: Shared timeout/kick/ban routine.
        escalation: Warn threshold resolver.
        settings: Automod tunables.
        connection: Database connection manager.
    """

    def __init__(
        self,
        state: AutoModState,
        rule_cache: RuleConfigCache,
        mod_actions: ModActions,
        escalation: EscalationEngine,
        settings: Optional[AutoModSettings] = None,
        connection: ConnectionManager = db_connection,
    ) -> None:
        self.state = state
        self.rule_cache = rule_cache
        self.mod_actions = mod_actions
        self.escalation = escalation
        self.settings = settings or app_config.automod
        self.connection = connection

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def handle_message(self, message: discord.Message) -> AutoModResult:
        """
        Run one automod pass over ``message``.

        Args:
            message (discord.Message): The inbound message.

        Returns:
            AutoModResult: Whether anything was done, and per-action outcomes.
        """
        if message.guild is None or message.is_system():
            return AutoModResult(acted=False, reason="skip")
        if message.author.bot:
            return AutoModResult(acted=False, reason="bot")
        if not (message.content or "").strip() and not message.attachments:
            return AutoModResult(acted=False, reason="empty")

        guild = message.guild
        config = await self.rule_cache.get_config(str(guild.id))
        if config is None or not config.enabled or not config.rules:
            return AutoModResult(acted=False, reason="disabled")

        member = await self._resolve_member(message)
        if member is None:
            return AutoModResult(acted=False, reason="no_member")
        if is_automod_exempt(member):
            return AutoModResult(acted=False, reason="exempt")

        snapshot = MessageSnapshot.from_message(message)
        now_ms = int(time.time() * 1000)
        if not await self._track(snapshot, now_ms):
            logger.warning("[AUTOMOD] Skipping guild %s pass, tracking writes failed", guild.id)
            return AutoModResult(acted=False, reason="tracking_fail")

        ctx = EvaluationContext(
            state=self.state,
            now_ms=now_ms,
            regex_timeout_ms=self.settings.regex_timeout_ms,
            max_regex_length=self.settings.max_regex_length,
        )

        for rule in config.rules:
            if not rule.enabled or rule.quarantined:
                continue
            if rule.is_exempt(snapshot.channel_id, snapshot.role_ids):
                continue

            try:
                violation = await evaluate_rule(rule, snapshot, ctx)
            except RuleEvaluationError as exc:
                await self._report_rule_error(snapshot.guild_id, rule, exc)
                continue
            except Exception as exc:
                logger.exception("[AUTOMOD] Rule %s (%s) raised unexpectedly", rule.id, rule.type)
                await self._report_rule_error(snapshot.guild_id, rule, exc)
                continue
            if violation is None:
                continue

            signature = f"viol:{violation.type.value}:{rule.id}"
            first = await self.state.try_acquire_lock(
                snapshot.guild_id, snapshot.author_id, signature, self.settings.violation_cooldown_seconds
            )
            if not first:
                return await self._handle_cooldown(message, rule)

            logger.info(
                "[AUTOMOD] Rule %s (%s) matched user %s in guild %s: %s",
                rule.id, rule.type, snapshot.author_id, snapshot.guild_id, violation.details,
            )
            outcomes = await self._handle_violation(message, member, snapshot, rule, violation)
            acted = any(o.success for o in outcomes)
            if acted:
                await self._notify(message, member, rule, violation, outcomes)
            return AutoModResult(acted=acted, reason=None if acted else "actions_failed", results=outcomes)

        return AutoModResult(acted=False, reason="no_match")

    # ------------------------------------------------------------------
    # Pass steps
    # ------------------------------------------------------------------

    @staticmethod
    async def _resolve_member(message: discord.Message) -> Optional[discord.Member]:
        author = message.author
        if getattr(author, "guild_permissions", None) is not None:
            return author
        try:
            return await message.guild.fetch_member(author.id)
        except discord.HTTPException:
            return None

    async def _track(self, snapshot: MessageSnapshot, now_ms: int) -> bool:
        """Record this message in the sliding windows; False when most writes failed."""
        writes = [
            self.state.record_event(snapshot.author_id, snapshot.guild_id, TrackingSignal.MESSAGE, now_ms),
            self.state.record_event(
                snapshot.author_id, snapshot.guild_id, TrackingSignal.CHANNEL, now_ms, snapshot.channel_id
            ),
        ]
        if snapshot.mention_count > 0:
            writes.append(
                self.state.record_event(
                    snapshot.author_id, snapshot.guild_id, TrackingSignal.MENTIONS, now_ms,
                    str(snapshot.mention_count),
                )
            )
        results = await asyncio.gather(*writes)
        failures = sum(1 for ok in results if not ok)
        return failures <= len(results) / 2

    async def _report_rule_error(self, guild_id: str, rule: AutoModRule, exc: Exception) -> None:
        logger.warning("[AUTOMOD] Rule %s (%s) in guild %s failed: %s", rule.id, rule.type, guild_id, exc)
        recent = await self.state.track_rule_error(guild_id, rule.id, str(exc))
        if recent >= self.settings.rule_error_alert_threshold:
            logger.error(
                "[AUTOMOD] Rule %s in guild %s failed %d times in the last minutes; consider quarantining it",
                rule.id, guild_id, recent,
            )

    async def _handle_cooldown(self, message: discord.Message, rule: AutoModRule) -> AutoModResult:
        """Another pass already acted on this violation; only remove this message."""
        has_delete = rule.has_action(RuleAction.DELETE)
        deleted = await safe_delete_message(message) if has_delete else False
        logger.debug(
            "[AUTOMOD] Rule %s cooldown active for user %s, deleted=%s", rule.id, message.author.id, deleted
        )
        outcome = ActionOutcome(action="delete", success=deleted, deleted=int(deleted), skipped=not has_delete)
        return AutoModResult(acted=deleted, reason="skipped_cooldown", results=[outcome])

    async def _handle_violation(
        self,
        message: discord.Message,
        member: discord.Member,
        snapshot: MessageSnapshot,
        rule: AutoModRule,
        violation: Violation,
    ) -> List[ActionOutcome]:
        outcomes: List[ActionOutcome] = []
        for action in rule.actions:
            if action == RuleAction.DELETE:
                outcome = await self._delete_burst(message, rule)
            else:
                outcome = await self._locked_action(message, member, snapshot, rule, violation, action)
            outcomes.append(outcome)
            await self._record(snapshot, rule, violation, outcome)

            if action == RuleAction.WARN and outcome.success and self.settings.escalate_on_warn:
                escalated = await self._escalate(message, member, snapshot, rule, violation, outcome.warn_count)
                if escalated is not None:
                    outcomes.append(escalated)
                    await self._record(snapshot, rule, violation, escalated)
        return outcomes

    async def _locked_action(
        self,
        message: discord.Message,
        member: discord.Member,
        snapshot: MessageSnapshot,
        rule: AutoModRule,
        violation: Violation,
        action: RuleAction,
    ) -> ActionOutcome:
        lock_key = action.value
        acquired = await self.state.try_acquire_lock(
            snapshot.guild_id, snapshot.author_id, lock_key, self.settings.action_lock_ttl_seconds
        )
        if not acquired:
            logger.debug("[AUTOMOD] %s lock held for user %s, skipping", action, snapshot.author_id)
            return ActionOutcome(action=action.value, success=False, skipped=True, error="locked")

        try:
            if action == RuleAction.WARN:
                return await self._warn(message, member, snapshot, rule, violation)
            return await self._mod_action(message, member, snapshot, rule, violation, action.value,
                                          rule.duration_seconds)
        finally:
            await self.state.release_lock(snapshot.guild_id, snapshot.author_id, lock_key)

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    async def _delete_burst(self, message: discord.Message, rule: AutoModRule) -> ActionOutcome:
        """Delete the trigger message and the author's other recent messages in this channel."""
        channel = message.channel
        if not isinstance(channel, (discord.TextChannel, discord.Thread)):
            deleted = await safe_delete_message(message)
            return ActionOutcome(action="delete", success=deleted, deleted=int(deleted))

        cap = self.settings.bulk_delete_cap
        cutoff = discord.utils.utcnow() - timedelta(seconds=rule.effective_window_seconds)
        to_delete: List[discord.Message] = [message]
        seen = {message.id}

        try:
            before = None
            for page in range(self.settings.fetch_pages_max):
                if len(to_delete) >= cap:
                    break
                if page:
                    await asyncio.sleep(FETCH_PAGE_DELAY_SECONDS)
                last = None
                reached_cutoff = False
                async for msg in channel.history(limit=HISTORY_PAGE_SIZE, before=before):
                    last = msg
                    if msg.created_at < cutoff:
                        reached_cutoff = True
                        break
                    if msg.author.id != message.author.id or msg.pinned or msg.id in seen:
                        continue
                    to_delete.append(msg)
                    seen.add(msg.id)
                    if len(to_delete) >= cap:
                        break
                if last is None or reached_cutoff:
                    break
                before = last
        except discord.HTTPException as exc:
            logger.warning("[AUTOMOD] History scan failed in channel %s: %s", channel.id, exc)

        try:
            await channel.delete_messages(to_delete, reason=f"AutoMod: {rule.name}")
            return ActionOutcome(action="delete", success=True, deleted=len(to_delete))
        except (discord.HTTPException, discord.ClientException) as exc:
            logger.debug("[AUTOMOD] Bulk delete failed in channel %s, deleting one by one: %s", channel.id, exc)

        count = 0
        for msg in to_delete:
            if await safe_delete_message(msg):
                count += 1
            await asyncio.sleep(DELETE_FALLBACK_DELAY_SECONDS)
        return ActionOutcome(
            action="delete",
            success=count > 0,
            deleted=count,
            error=None if count else "no messages could be deleted",
        )

    @staticmethod
    def _action_context(snapshot: MessageSnapshot, rule: AutoModRule, violation: Violation) -> dict:
        return {
            "auto_mod": True,
            "rule_id": rule.id,
            "rule_name": rule.name,
            "violation": violation.details,
            "message_id": snapshot.message_id,
            "channel_id": snapshot.channel_id,
        }

    async def _warn(
        self,
        message: discord.Message,
        member: discord.Member,
        snapshot: MessageSnapshot,
        rule: AutoModRule,
        violation: Violation,
    ) -> ActionOutcome:
        bot_id = message.guild.me.id if message.guild.me else None
        try:
            async with self.connection.transaction(immediate=True) as conn:
                infraction = await InfractionRepository.create_with_count(
                    conn,
                    guild_id=snapshot.guild_id,
                    user_id=snapshot.author_id,
                    moderator_id=str(bot_id),
                    infraction_type=InfractionType.WARN,
                    reason=f"AutoMod: {rule.name} - {violation.reason}",
                    duration_seconds=None,
                    context=self._action_context(snapshot, rule, violation),
                    now=int(time.time()),
                )
        except aiosqlite.Error as exc:
            logger.error("[AUTOMOD] Failed to create warn for user %s: %s", snapshot.author_id, exc)
            return ActionOutcome(action="warn", success=False, error=str(exc))

        logger.info(
            "[AUTOMOD] Warned user %s in guild %s (active warns: %s)",
            snapshot.author_id, snapshot.guild_id, infraction.warn_count,
        )
        return ActionOutcome(
            action="warn", success=True, infraction_id=infraction.id, warn_count=infraction.warn_count
        )

    async def _escalate(
        self,
        message: discord.Message,
        member: discord.Member,
        snapshot: MessageSnapshot,
        rule: AutoModRule,
        violation: Violation,
        warn_count: Optional[int],
    ) -> Optional[ActionOutcome]:
        """Apply the warn threshold action the new warn count has reached, if any."""
        if not warn_count:
            return None
        auto = await self.escalation.resolve_auto_action(snapshot.guild_id, warn_count)
        if auto is None:
            return None

        logger.info(
            "[AUTOMOD] User %s reached %d warns in guild %s, escalating to %s",
            snapshot.author_id, warn_count, snapshot.guild_id, auto.action,
        )
        acquired = await self.state.try_acquire_lock(
            snapshot.guild_id, snapshot.author_id, auto.action, self.settings.action_lock_ttl_seconds
        )
        if not acquired:
            return ActionOutcome(action=auto.action, success=False, skipped=True, error="locked", escalated=True)
        try:
            outcome = await self._mod_action(
                message, member, snapshot, rule, violation, auto.action, auto.duration_seconds
            )
        finally:
            await self.state.release_lock(snapshot.guild_id, snapshot.author_id, auto.action)
        outcome.escalated = True
        return outcome

    async def _mod_action(
        self,
        message: discord.Message,
        member: discord.Member,
        snapshot: MessageSnapshot,
        rule: AutoModRule,
        violation: Violation,
        action: str,
        duration_seconds: Optional[int],
    ) -> ActionOutcome:
        if not duration_seconds and action == RuleAction.TIMEOUT.value:
            duration_seconds = DEFAULT_TIMEOUT_SECONDS
        bot_id = message.guild.me.id if message.guild.me else None
        try:
            result = await self.mod_actions.apply(
                message.guild,
                member,
                bot_id,
                action,
                duration_seconds=duration_seconds,
                reason=f"AutoMod: {rule.name} - {violation.reason}",
                context=self._action_context(snapshot, rule, violation),
                is_auto=True,
            )
        except Exception as exc:
            logger.exception("[AUTOMOD] %s on user %s failed", action, snapshot.author_id)
            return ActionOutcome(action=action, success=False, error=str(exc))

        return ActionOutcome(
            action=action,
            success=result.applied,
            error=None if result.applied else (result.message or "failed"),
            infraction_id=result.infraction.id if result.infraction else None,
        )

    # ------------------------------------------------------------------
    # Persistence and feedback
    # ------------------------------------------------------------------

    async def _record(
        self,
        snapshot: MessageSnapshot,
        rule: AutoModRule,
        violation: Violation,
        outcome: ActionOutcome,
    ) -> None:
        now = int(time.time())
        try:
            async with self.connection.transaction() as conn:
                await AuditRepository.record_violation(
                    conn,
                    guild_id=snapshot.guild_id,
                    user_id=snapshot.author_id,
                    rule_id=rule.id,
                    message_id=snapshot.message_id,
                    channel_id=snapshot.channel_id,
                    violation_type=violation.type.value,
                    action_taken=outcome.action,
                    violation_data=violation.details,
                    success=outcome.success,
                    error_message=outcome.error,
                    now=now,
                )
                await AuditRepository.log_audit(
                    conn,
                    guild_id=snapshot.guild_id,
                    action_type="automod_violation",
                    actor_id=None,
                    target_id=snapshot.author_id,
                    details={
                        "rule_id": rule.id,
                        "rule_name": rule.name,
                        "rule_type": rule.type.value,
                        "action": outcome.action,
                        "success": outcome.success,
                        "error": outcome.error,
                        "infraction_id": outcome.infraction_id,
                        "message_id": snapshot.message_id,
                        "channel_id": snapshot.channel_id,
                    },
                    now=now,
                )
        except aiosqlite.Error as exc:
            logger.error("[AUTOMOD] Failed to record %s outcome for rule %s: %s", outcome.action, rule.id, exc)

    async def _notify(
        self,
        message: discord.Message,
        member: discord.Member,
        rule: AutoModRule,
        violation: Violation,
        outcomes: List[ActionOutcome],
    ) -> None:
        guild = message.guild

        dm_on_action = True
        try:
            async with self.connection.read() as conn:
                dm_on_action = (await GuildConfigRepository.get(conn, str(guild.id))).dm_on_action
        except aiosqlite.Error as exc:
            logger.debug("[AUTOMOD] Could not read dm_on_action for guild %s: %s", guild.id, exc)

        if dm_on_action:
            try:
                await member.send(embed=build_dm_notice(guild, rule, violation, outcomes))
            except discord.HTTPException as exc:
                logger.debug("[AUTOMOD] Could not DM user %s: %s", member.id, exc)

        channel = message.channel
        if not isinstance(channel, (discord.TextChannel, discord.Thread)):
            return
        if not bot_can_post_embeds(channel, guild):
            return
        try:
            await channel.send(embed=build_violation_embed(member, rule, violation, outcomes))
        except discord.HTTPException as exc:
            logger.debug("[AUTOMOD] Could not post violation embed in %s: %s", channel.id, exc)
