"""
Utility functions and helpers for Wardcord.

This package provides reusable utilities:

- **logger.py**: Centralized logging configuration with colored console output,
  one rotating session file per process. Suppresses noise from
  verbose libraries (Discord internals, aiosqlite, redis). Uses prompt_toolkit
  for console output.

- **errors.py**: The small exception hierarchy raised by moderation actions and
  scheduled jobs.

- **discord_utils.py**: Low-level Discord API helpers including permission checks,
  safe message deletion and duration formatting.
"""
