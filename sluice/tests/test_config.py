"""
Tests for sluice.config module.
"""
import datetime
import os

import pytest

from sluice.config import EngineConfig, load_engine_config, load_sluice_toml

TOML = """
[sluice]
database_url = "postgresql+asyncpg://u:p@db/admissions"
processing_interval_seconds = 120
lease_ttl_seconds = 45
default_channels = ["email"]
template_files = ["templates/graduate.toml"]
unknown_setting = "ignored"

[other]
max_workers = 99
"""


@pytest.fixture(autouse=True)
def isolated(monkeypatch, tmp_path):
    """Run each test in an empty directory without SLUICE_* variables."""
    monkeypatch.chdir(tmp_path)
    for key in list(os.environ):
        if key.startswith("SLUICE_"):
            monkeypatch.delenv(key)
    return tmp_path


class TestEngineConfig:
    """Tests for EngineConfig defaults and derived values."""

    def test_defaults(self):
        config = EngineConfig()
        assert config.processing_interval == datetime.timedelta(minutes=5)
        assert config.lease_ttl == datetime.timedelta(seconds=60)
        assert config.default_channels == ["email", "in_app"]
        assert config.auto_process_transitions
        assert config.load_default_templates
        assert config.processing_cron is None

    def test_retry_policy(self):
        config = EngineConfig(
            notification_max_retries=5,
            notification_backoff_factor=3.0,
            notification_backoff_min_seconds=2.0,
            notification_backoff_max_seconds=30.0,
        )
        policy = config.retry_policy()
        assert policy.max_retries == 5
        assert policy.backoff_factor == 3.0
        assert policy.backoff_min == datetime.timedelta(seconds=2)
        assert policy.backoff_max == datetime.timedelta(seconds=30)

    def test_from_mapping_ignores_unknown_keys(self):
        config = EngineConfig.from_mapping({"max_workers": 3, "colour": "blue"})
        assert config.max_workers == 3


class TestLoadSluiceToml:
    def test_no_file(self):
        assert load_sluice_toml() == {}

    def test_explicit_path(self, isolated):
        path = isolated / "engine.toml"
        path.write_text(TOML)
        config = load_engine_config(str(path))
        assert config.database_url == "postgresql+asyncpg://u:p@db/admissions"
        assert config.processing_interval_seconds == 120
        assert config.lease_ttl_seconds == 45
        assert config.default_channels == ["email"]
        assert config.template_files == ["templates/graduate.toml"]
        assert config.max_workers == 8

    def test_cwd_file(self, isolated):
        (isolated / "sluice.toml").write_text(TOML)
        assert load_sluice_toml()["lease_ttl_seconds"] == 45

    def test_config_env_var(self, isolated, monkeypatch):
        path = isolated / "conf" / "engine.toml"
        path.parent.mkdir()
        path.write_text(TOML)
        monkeypatch.setenv("SLUICE_CONFIG", str(path))
        data = load_sluice_toml()
        assert data["processing_interval_seconds"] == 120
        assert "config" not in data

    def test_missing_explicit_path_falls_through(self, isolated):
        (isolated / "sluice.toml").write_text(TOML)
        assert load_sluice_toml("nope.toml")["lease_ttl_seconds"] == 45


class TestEnvOverrides:
    def test_typed_overrides(self, isolated, monkeypatch):
        (isolated / "sluice.toml").write_text(TOML)
        monkeypatch.setenv("SLUICE_MAX_WORKERS", "16")
        monkeypatch.setenv("SLUICE_LEASE_TTL_SECONDS", "90")
        monkeypatch.setenv("SLUICE_ENABLE_PROMETHEUS", "yes")
        monkeypatch.setenv("SLUICE_AUTO_PROCESS_TRANSITIONS", "false")
        monkeypatch.setenv("SLUICE_NOTIFICATION_BACKOFF_FACTOR", "1.5")
        monkeypatch.setenv("SLUICE_DEFAULT_CHANNELS", "email, sms,")
        monkeypatch.setenv("SLUICE_PROCESSING_CRON", "*/10 * * * *")

        config = load_engine_config()

        assert config.max_workers == 16
        assert config.lease_ttl_seconds == 90
        assert config.enable_prometheus is True
        assert config.auto_process_transitions is False
        assert config.notification_backoff_factor == 1.5
        assert config.default_channels == ["email", "sms"]
        assert config.processing_cron == "*/10 * * * *"

    def test_unparseable_number_is_ignored(self, monkeypatch):
        monkeypatch.setenv("SLUICE_MAX_WORKERS", "many")
        assert load_engine_config().max_workers == 8

    def test_overrides_without_file(self, monkeypatch):
        monkeypatch.setenv("SLUICE_DATABASE_URL", "sqlite+aiosqlite:///x.db")
        assert load_engine_config().database_url == "sqlite+aiosqlite:///x.db"
