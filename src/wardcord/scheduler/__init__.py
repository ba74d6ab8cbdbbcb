"""
Durable job queue for time-delayed moderation actions.

- **job_scheduler.py**: Enqueues jobs and claims due ones with a single atomic
  UPDATE ... RETURNING so concurrent workers never run the same job twice.
  Failed jobs back off and are marked permanently failed after the configured
  number of attempts.

- **job_handlers.py**: One handler per job type (unban, untimeout, unmute,
  reapply_timeout, slowmode_end, lockdown_end, cleanup_expired,
  cleanup_components). Missing guilds, members, channels and roles are
  treated as completed.
"""
