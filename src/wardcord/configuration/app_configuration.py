from __future__ import annotations
from pathlib import Path
import fcntl
import os
from typing import Any, Dict
import yaml

from wardcord.configuration.automod_settings import AutoModSettings, SchedulerSettings
from wardcord.util.logger import get_logger

logger = get_logger("app_configuration")


CONFIG_PATH = Path("./config/app_config.yml").resolve()

DEFAULT_REDIS_URL = "redis://localhost:6379/0"
DEFAULT_DATABASE_PATH = "./data/app.db"


class AppConfig:
    """File-lock based accessor around the YAML-based application configuration.

    The class caches contents of ``./config/app_config.yml``, exposes dictionary-like
    access helpers, and resolves the automod and scheduler sections through
    :class:`AutoModSettings` and :class:`SchedulerSettings`.
    Uses fcntl file locks for safe concurrent access across processes.
    """

    def __init__(self, config_path: Path) -> None:
        self.config_path = config_path
        self._data: Dict[str, Any] = {}
        self.reload()

    # --------------------------
    # Private helpers
    # --------------------------
    def load_from_disk(self) -> Dict[str, Any]:
        try:
            with self.config_path.open("r", encoding="utf-8") as f:
                # Shared lock: several shards may read while an operator edits
                fcntl.flock(f.fileno(), fcntl.LOCK_SH)
                data = yaml.safe_load(f)
                fcntl.flock(f.fileno(), fcntl.LOCK_UN)
                if not isinstance(data, dict):
                    logger.error("[APP CONFIGURATION] Config %s is not a mapping; using defaults.", self.config_path)
                    return {}
                return data
        except FileNotFoundError:
            logger.error("[APP CONFIGURATION] Config file %s not found.", self.config_path)
        except (OSError, yaml.YAMLError) as exc:
            logger.error("[APP CONFIGURATION] Failed to load config %s: %s", self.config_path, exc)
        return {}

    def _section(self, key: str) -> Dict[str, Any]:
        section = self._data.get(key, {})
        if not isinstance(section, dict):
            logger.error("[APP CONFIGURATION] Section '%s' is not a mapping; using defaults.", key)
            return {}
        return section

    # --------------------------
    # Public API
    # --------------------------
    def reload(self) -> Dict[str, Any]:
        """Reload configuration from disk and return the loaded mapping.

        Returns the raw mapping that was loaded (an empty dict on error).
        """
        self._data = self.load_from_disk()
        return self._data

    @property
    def data(self) -> Dict[str, Any]:
        """Return the current cached configuration mapping.

        Callers should not mutate it; use get(...) or the section properties.
        """
        return self._data

    def get(self, key: str, default: Any = None) -> Any:
        """Safe lookup for top-level configuration keys."""
        return self._data.get(key, default)

    # --------------------------
    # High-level shortcuts
    # --------------------------
    @property
    def automod(self) -> AutoModSettings:
        return AutoModSettings(self._section("automod"))

    @property
    def scheduler(self) -> SchedulerSettings:
        return SchedulerSettings(self._section("scheduler"))

    @property
    def redis_url(self) -> str:
        """Return the shared state store URL.

        ``WARDCORD_REDIS_URL`` in the environment wins over the file so
        deployments can point shards at a different Redis without edits.
        """
        return os.getenv("WARDCORD_REDIS_URL") or str(self._data.get("redis_url") or DEFAULT_REDIS_URL)

    @property
    def database_path(self) -> Path:
        return Path(str(self._data.get("database_path") or DEFAULT_DATABASE_PATH)).resolve()


# Shared application-wide configuration instance
app_config = AppConfig(CONFIG_PATH)
