"""
Wardcord - Rule-Based Discord Auto-Moderation Bot

Wardcord watches guild messages, evaluates them against per-guild automod
rules and enforces the configured consequences, while a durable job queue
reverses temporary actions on time.

Core Components:

- **AutoMod Engine**: Evaluates spam, cross-channel spam, mention spam, caps,
  invite, link, keyword and regex rules, then deletes, warns, times out,
  kicks or bans with cooldown and per-action locks shared across shards
- **Shared State**: Redis-backed sliding-window counters, short TTL locks and
  a cached copy of every guild's rule set with pub/sub invalidation
- **Escalation**: Warn thresholds mapped to automatic follow-up actions
- **Job Scheduler**: SQLite-backed queue of reversal jobs (unban, untimeout,
  unmute, slowmode and lockdown end, cleanups) claimed atomically by workers

Usage:
    from wardcord.main import main
    main()  # Starts the bot
"""
