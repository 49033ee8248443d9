"""
Tests for configuration loading and validation.
"""

import pytest

from shared_lib.config import (
    ConfigurationError, DatabaseConfig, RedisConfig, SecurityConfig, SystemConfig,
    create_sample_env_file, load_config
)

TEST_ENCRYPTION_KEY = "0123456789abcdef" * 4

REQUIRED_ENV = {
    "DATABASE__HOST": "db.internal",
    "DATABASE__DATABASE": "claims",
    "DATABASE__USERNAME": "monitor",
    "DATABASE__PASSWORD": "secret",
    "YOUTUBE__CLIENT_ID": "client-id",
    "YOUTUBE__CLIENT_SECRET": "client-secret",
    "SECURITY__ENCRYPTION_KEY": TEST_ENCRYPTION_KEY,
}


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """Run from an empty directory with no monitor variables set."""
    monkeypatch.chdir(tmp_path)
    for var in list(REQUIRED_ENV) + ["DATABASE__URL", "WORKER__CONCURRENCY"]:
        monkeypatch.delenv(var, raising=False)
    return monkeypatch


class TestComponentConfigs:

    def test_database_url_from_parts(self):
        config = DatabaseConfig(host="db", port=5433, database="claims", username="u", password="p")
        assert config.get_url() == "postgresql+asyncpg://u:p@db:5433/claims"

    def test_database_url_override(self):
        config = DatabaseConfig(url="sqlite+aiosqlite:///monitor.db")
        assert config.get_url() == "sqlite+aiosqlite:///monitor.db"

    def test_redis_url(self):
        assert RedisConfig().url == "redis://localhost:6379/0"
        assert RedisConfig(password="pw", db=2).url == "redis://:pw@localhost:6379/2"

    def test_encryption_key_validation(self):
        with pytest.raises(ValueError):
            SecurityConfig(encryption_key="not-hex")
        with pytest.raises(ValueError):
            SecurityConfig(encryption_key="ab" * 16)
        assert SecurityConfig(encryption_key=TEST_ENCRYPTION_KEY).encryption_key == TEST_ENCRYPTION_KEY


class TestSystemConfig:

    def test_defaults(self, clean_env):
        config = SystemConfig.from_dict({"security": {"encryption_key": TEST_ENCRYPTION_KEY}})

        assert config.worker.concurrency == 5
        assert config.worker.channel_sync_attempts == 3
        assert config.worker.claim_sync_attempts == 2
        assert config.worker.claim_detect_attempts == 3
        assert config.worker.notification_attempts == 5
        assert config.worker.video_page_delay == 0.5
        assert config.worker.claim_page_delay == 0.3
        assert config.scheduler.sync_interval_hours == 4
        assert config.scheduler.stagger_seconds == 5
        assert config.email.enabled is False

    def test_missing_encryption_key(self, clean_env):
        with pytest.raises(ConfigurationError):
            SystemConfig.from_env()

    def test_nested_environment_variables(self, clean_env):
        clean_env.setenv("SECURITY__ENCRYPTION_KEY", TEST_ENCRYPTION_KEY)
        clean_env.setenv("WORKER__CONCURRENCY", "8")

        config = SystemConfig.from_env()

        assert config.worker.concurrency == 8
        assert config.to_dict()["worker"]["concurrency"] == 8

    def test_required_env_vars(self, clean_env):
        clean_env.setenv("SECURITY__ENCRYPTION_KEY", TEST_ENCRYPTION_KEY)
        config = SystemConfig.from_env()

        missing = config.validate_required_env_vars()

        assert "DATABASE__HOST" in missing
        assert "YOUTUBE__CLIENT_ID" in missing
        assert "SECURITY__ENCRYPTION_KEY" not in missing

    def test_database_url_replaces_connection_vars(self, clean_env):
        clean_env.setenv("SECURITY__ENCRYPTION_KEY", TEST_ENCRYPTION_KEY)
        clean_env.setenv("DATABASE__URL", "postgresql+asyncpg://u:p@db/claims")
        config = SystemConfig.from_env()

        missing = config.validate_required_env_vars()

        assert not any(var.startswith("DATABASE__") for var in missing)

    def test_load_config(self, clean_env):
        for var, value in REQUIRED_ENV.items():
            clean_env.setenv(var, value)

        config = load_config()

        assert config.database.host == "db.internal"
        assert config.youtube.client_id == "client-id"

    def test_load_config_reports_missing(self, clean_env):
        clean_env.setenv("SECURITY__ENCRYPTION_KEY", TEST_ENCRYPTION_KEY)

        with pytest.raises(ConfigurationError, match="YOUTUBE__CLIENT_ID"):
            load_config()

    def test_sample_env_file(self, tmp_path):
        path = tmp_path / ".env.example"
        create_sample_env_file(str(path))

        content = path.read_text()
        assert "SECURITY__ENCRYPTION_KEY=" in content
        assert "WORKER__CONCURRENCY=5" in content
