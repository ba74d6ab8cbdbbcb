from typing import Any, Dict


class AutoModSettings:
    """Helper exposing typed accessors for the ``automod`` config section.

    Each property falls back to the engine default when the key is
    missing, so an empty section yields a fully working configuration.
    """

    def __init__(self, data: Dict[str, Any] | None = None) -> None:
        self.data: Dict[str, Any] = data or {}

    def get(self, key: str, default: Any = None) -> Any:
        """Return the value for `key` or `default` if missing."""
        return self.data.get(key, default)

    def as_dict(self) -> Dict[str, Any]:
        return self.data

    @property
    def violation_cooldown_seconds(self) -> int:
        return int(self.data.get("violation_cooldown_seconds", 10))

    @property
    def action_lock_ttl_seconds(self) -> int:
        return int(self.data.get("action_lock_ttl_seconds", 15))

    @property
    def regex_timeout_ms(self) -> int:
        return int(self.data.get("regex_timeout_ms", 100))

    @property
    def max_regex_length(self) -> int:
        return int(self.data.get("max_regex_length", 200))

    @property
    def fetch_pages_max(self) -> int:
        return int(self.data.get("fetch_pages_max", 5))

    @property
    def bulk_delete_cap(self) -> int:
        # Discord bulk delete accepts at most 100 messages per call
        return min(int(self.data.get("bulk_delete_cap", 80)), 100)

    @property
    def tracking_ttl_seconds(self) -> int:
        return int(self.data.get("tracking_ttl_seconds", 300))

    @property
    def config_cache_ttl_seconds(self) -> int:
        return int(self.data.get("config_cache_ttl_seconds", 300))

    @property
    def escalate_on_warn(self) -> bool:
        """Whether an automod warn may trigger a threshold action in the same pass."""
        return bool(self.data.get("escalate_on_warn", False))

    @property
    def rule_error_alert_threshold(self) -> int:
        return int(self.data.get("rule_error_alert_threshold", 5))


class SchedulerSettings:
    """Helper exposing typed accessors for the ``scheduler`` config section."""

    def __init__(self, data: Dict[str, Any] | None = None) -> None:
        self.data: Dict[str, Any] = data or {}

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)

    @property
    def poll_interval_seconds(self) -> float:
        return float(self.data.get("poll_interval_seconds", 5.0))

    @property
    def batch_size(self) -> int:
        return int(self.data.get("batch_size", 10))

    @property
    def max_attempts(self) -> int:
        return int(self.data.get("max_attempts", 5))

    @property
    def stale_lock_seconds(self) -> int:
        return int(self.data.get("stale_lock_seconds", 60))

    @property
    def retry_backoff_seconds(self) -> int:
        return int(self.data.get("retry_backoff_seconds", 30))

    @property
    def failed_job_retention_days(self) -> int:
        return int(self.data.get("failed_job_retention_days", 30))

    @property
    def violation_retention_days(self) -> int:
        return int(self.data.get("violation_retention_days", 30))

    @property
    def worker_id(self) -> str | None:
        val = self.data.get("worker_id")
        return str(val) if val else None
