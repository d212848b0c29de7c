"""Unit tests for configuration loading."""

import pytest
from pydantic import ValidationError

from mongo_cdc.config.settings import (
    CheckpointSettings, LogSettings, Settings, SourceSettings, load_settings
)


class TestSettings:
    """Test Settings defaults and validation."""

    def test_defaults(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        settings = Settings()
        assert settings.batch_size == 1000
        assert settings.flush_interval_seconds == 5
        assert settings.reconnect_delay_seconds == 5
        assert settings.startup_retry_delay_seconds == 60
        assert settings.health_stale_threshold_seconds == 300
        assert settings.source.database == "AUTH"
        assert settings.target.database == "REPORT"
        assert settings.checkpoint.backend == "file"
        assert settings.checkpoint.path == "./checkpoint.json"
        assert settings.alert.subject_prefix == "[MongoDB CDC Alert]"
        assert settings.metrics_port is None

    def test_env_overrides(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("CDC_BATCH_SIZE", "50")
        monkeypatch.setenv("CDC_SOURCE_COLLECTION", "orders")
        monkeypatch.setenv("CDC_TARGET_URI", "mongodb://replica:27017/")
        settings = load_settings()
        assert settings.batch_size == 50
        assert settings.source.collection == "orders"
        assert settings.source.namespace == "AUTH.orders"
        assert settings.target.uri == "mongodb://replica:27017/"

    def test_env_file(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        env_file = tmp_path / "cdc.env"
        env_file.write_text("CDC_FLUSH_INTERVAL_SECONDS=2\nCDC_CHECKPOINT_PATH=/var/lib/cdc/cp.json\n")
        settings = load_settings(str(env_file))
        assert settings.flush_interval_seconds == 2
        assert settings.checkpoint.path == "/var/lib/cdc/cp.json"

    @pytest.mark.parametrize("field", [
        "batch_size", "flush_interval_seconds", "reconnect_delay_seconds",
        "startup_retry_delay_seconds", "health_stale_threshold_seconds"
    ])
    def test_rejects_non_positive(self, field):
        with pytest.raises(ValidationError):
            Settings(**{field: 0})

    def test_settings_are_immutable(self):
        settings = Settings(batch_size=10)
        with pytest.raises(ValidationError):
            settings.batch_size = 20

    def test_sql_backend_requires_url(self):
        with pytest.raises(ValidationError, match="DATABASE_URL"):
            Settings(checkpoint=CheckpointSettings(backend="sql", database_url=None))

    def test_sql_backend_with_url(self):
        settings = Settings(checkpoint=CheckpointSettings(backend="sql", database_url="sqlite:///cp.db"))
        assert settings.checkpoint.database_url == "sqlite:///cp.db"

    def test_log_level_normalized(self):
        assert LogSettings(level="debug").level == "DEBUG"
        with pytest.raises(ValidationError):
            LogSettings(level="verbose")

    def test_namespace(self):
        assert SourceSettings(database="AUTH", collection="users").namespace == "AUTH.users"
