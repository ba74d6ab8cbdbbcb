import json
from pathlib import Path

import pytest

from wardcord.configuration.app_configuration import DEFAULT_REDIS_URL, AppConfig
from wardcord.configuration.automod_settings import AutoModSettings, SchedulerSettings


@pytest.fixture()
def config_path(tmp_path: Path) -> Path:
    return tmp_path / "app_config.yml"


def test_app_config_reload_parses_yaml(config_path: Path, monkeypatch) -> None:
    monkeypatch.delenv("WARDCORD_REDIS_URL", raising=False)
    config_payload = {
        "redis_url": "redis://cache:6379/2",
        "database_path": str(config_path.parent / "bot.db"),
        "automod": {
            "violation_cooldown_seconds": 20,
            "bulk_delete_cap": 50,
            "escalate_on_warn": True,
        },
        "scheduler": {
            "poll_interval_seconds": 2.5,
            "max_attempts": 7,
            "worker_id": "shard-1",
        },
    }
    config_path.write_text(json.dumps(config_payload), encoding="utf-8")

    config = AppConfig(config_path)

    assert config.redis_url == "redis://cache:6379/2"
    assert config.database_path == (config_path.parent / "bot.db").resolve()

    automod = config.automod
    assert automod.violation_cooldown_seconds == 20
    assert automod.bulk_delete_cap == 50
    assert automod.escalate_on_warn is True
    assert automod.get("action_lock_ttl_seconds") is None
    assert automod.action_lock_ttl_seconds == 15

    scheduler = config.scheduler
    assert scheduler.poll_interval_seconds == pytest.approx(2.5)
    assert scheduler.max_attempts == 7
    assert scheduler.worker_id == "shard-1"


def test_app_config_missing_file_returns_defaults(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.delenv("WARDCORD_REDIS_URL", raising=False)
    config = AppConfig(tmp_path / "does_not_exist.yml")

    assert config.data == {}
    assert config.redis_url == DEFAULT_REDIS_URL
    assert config.database_path.name == "app.db"
    assert config.automod.violation_cooldown_seconds == 10
    assert config.scheduler.batch_size == 10


def test_app_config_non_mapping_sections(config_path: Path) -> None:
    config_path.write_text("automod: [1, 2]\nscheduler: nope\n", encoding="utf-8")

    config = AppConfig(config_path)

    assert config.automod.as_dict() == {}
    assert config.scheduler.max_attempts == 5


def test_app_config_redis_url_env_override(config_path: Path, monkeypatch) -> None:
    config_path.write_text("redis_url: redis://file:6379/0\n", encoding="utf-8")
    monkeypatch.setenv("WARDCORD_REDIS_URL", "redis://env:6379/1")

    assert AppConfig(config_path).redis_url == "redis://env:6379/1"


def test_app_config_reload_picks_up_changes(config_path: Path) -> None:
    config_path.write_text("automod:\n  regex_timeout_ms: 50\n", encoding="utf-8")
    config = AppConfig(config_path)
    assert config.automod.regex_timeout_ms == 50

    config_path.write_text("automod:\n  regex_timeout_ms: 250\n", encoding="utf-8")
    config.reload()
    assert config.automod.regex_timeout_ms == 250


def test_automod_settings_defaults() -> None:
    settings = AutoModSettings()

    assert settings.violation_cooldown_seconds == 10
    assert settings.action_lock_ttl_seconds == 15
    assert settings.regex_timeout_ms == 100
    assert settings.max_regex_length == 200
    assert settings.fetch_pages_max == 5
    assert settings.bulk_delete_cap == 80
    assert settings.tracking_ttl_seconds == 300
    assert settings.config_cache_ttl_seconds == 300
    assert settings.escalate_on_warn is False
    assert settings.rule_error_alert_threshold == 5


def test_bulk_delete_cap_never_exceeds_discord_limit() -> None:
    assert AutoModSettings({"bulk_delete_cap": 500}).bulk_delete_cap == 100


def test_scheduler_settings_defaults() -> None:
    settings = SchedulerSettings({"worker_id": ""})

    assert settings.poll_interval_seconds == pytest.approx(5.0)
    assert settings.batch_size == 10
    assert settings.max_attempts == 5
    assert settings.stale_lock_seconds == 60
    assert settings.retry_backoff_seconds == 30
    assert settings.failed_job_retention_days == 30
    assert settings.violation_retention_days == 30
    assert settings.worker_id is None
