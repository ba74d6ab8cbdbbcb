"""
Auto-moderation pipeline for Wardcord.

- **rule_evaluator.py**: One evaluator per rule type behind a static dispatch
  table. Frequency rules read the shared sliding-window counters.

- **rule_cache.py**: Per-guild rule set cache (process memory, then Redis,
  then SQLite) with cross-process invalidation.

- **automod_engine.py**: Entry point for every guild message. Applies
  exemptions, evaluates rules in priority order and executes the first
  violation's actions under cooldown and per-action locks.

- **mod_actions.py**: Timeout, mute, kick, ban and softban shared with manual
  commands. Schedules the matching reversal jobs.

- **escalation.py**: Maps a user's active warn count to an automatic action.

- **automod_embed.py**: The DM notice and channel violation embeds.
"""
