"""
Configuration management for Wardcord.

- **app_configuration.py**: YAML configuration loader for global settings.
  Provides the Redis URL, database path and the ``automod`` and ``scheduler``
  sections. Falls back gracefully on missing or malformed config files.

- **automod_settings.py**: Typed accessors with defaults for the ``automod``
  and ``scheduler`` sections.
"""
