"""Tests for configuration management."""

import json

import pytest

from resume_queue.config import ConfigManager, QueueSettings, env_overrides
from resume_queue.errors import ValidationError


@pytest.fixture
def config_file(tmp_path):
    return tmp_path / "config" / "config.json"


class TestQueueSettings:
    """Tests for QueueSettings defaults and validation."""

    def test_defaults(self):
        settings = QueueSettings()
        assert settings.queue_dir == "queue"
        assert settings.max_queue_size == 0
        assert settings.max_retries == 3
        assert settings.default_timeout == 3600
        assert settings.completion_marker == "###TASK_COMPLETE###"
        assert settings.auto_cleanup_days == 7
        assert settings.backup_retention_days == 30
        assert settings.lock_timeout == 30.0
        assert settings.lock_backend == "auto"
        assert settings.lower_priority_first is True

    def test_lock_backend_normalized(self):
        assert QueueSettings(lock_backend=" Directory ").lock_backend == "directory"

    def test_queue_path_expands_home(self):
        assert "~" not in str(QueueSettings(queue_dir="~/queue").queue_path)


class TestEnvOverrides:
    """Tests for env_overrides."""

    def test_collects_known_variables(self):
        overrides = env_overrides({
            "TASK_QUEUE_MAX_SIZE": "50",
            "QUEUE_LOCK_BACKEND": "directory",
            "UNRELATED": "x",
            "TASK_MAX_RETRIES": "",
        })
        assert overrides == {"max_queue_size": "50", "lock_backend": "directory"}


class TestConfigManager:
    """Tests for ConfigManager."""

    def test_missing_file_uses_defaults(self, config_file):
        manager = ConfigManager(config_file)
        assert manager.settings == QueueSettings()
        assert not config_file.exists()

    def test_loads_file(self, config_file):
        config_file.parent.mkdir(parents=True)
        config_file.write_text(json.dumps({"max_retries": 5, "queue_dir": "/srv/queue"}))

        settings = ConfigManager(config_file).settings
        assert settings.max_retries == 5
        assert settings.queue_dir == "/srv/queue"

    @pytest.mark.parametrize("content", ["{not json", json.dumps({"max_retries": -1})])
    def test_invalid_file_falls_back_to_defaults(self, config_file, content, caplog):
        config_file.parent.mkdir(parents=True)
        config_file.write_text(content)

        settings = ConfigManager(config_file).settings

        assert settings == QueueSettings()
        assert "using defaults" in caplog.text

    def test_env_overrides_file(self, config_file, monkeypatch):
        config_file.parent.mkdir(parents=True)
        config_file.write_text(json.dumps({"max_retries": 5, "max_queue_size": 10}))
        monkeypatch.setenv("TASK_MAX_RETRIES", "1")
        monkeypatch.setenv("QUEUE_LOCK_TIMEOUT", "2.5")

        manager = ConfigManager(config_file)

        assert manager.settings.max_retries == 1
        assert manager.settings.lock_timeout == 2.5
        assert manager.settings.max_queue_size == 10
        assert manager.file_settings.max_retries == 5

    def test_invalid_env_override_is_ignored(self, config_file, monkeypatch, caplog):
        monkeypatch.setenv("TASK_QUEUE_MAX_SIZE", "lots")
        monkeypatch.setenv("TASK_MAX_RETRIES", "4")

        settings = ConfigManager(config_file).settings

        assert settings.max_queue_size == 0
        assert settings.max_retries == 4
        assert "Ignoring invalid environment override for max_queue_size" in caplog.text

    def test_use_env_false(self, config_file, monkeypatch):
        monkeypatch.setenv("TASK_MAX_RETRIES", "9")
        assert ConfigManager(config_file, use_env=False).settings.max_retries == 3

    def test_env_file_is_loaded(self, config_file, tmp_path, monkeypatch):
        env_file = tmp_path / ".env"
        env_file.write_text("TASK_DEFAULT_TIMEOUT=120\n")

        settings = ConfigManager(config_file, env_file=env_file).settings
        assert settings.default_timeout == 120

    def test_update_settings_persists(self, config_file):
        manager = ConfigManager(config_file)

        effective = manager.update_settings(max_queue_size=25, lock_backend="directory")

        assert effective.max_queue_size == 25
        saved = json.loads(config_file.read_text())
        assert saved["max_queue_size"] == 25
        assert saved["lock_backend"] == "directory"
        assert ConfigManager(config_file).settings.max_queue_size == 25

    def test_update_unknown_setting(self, config_file):
        with pytest.raises(ValidationError, match="Unknown setting"):
            ConfigManager(config_file).update_settings(colour="blue")
        assert not config_file.exists()

    def test_update_invalid_value(self, config_file):
        manager = ConfigManager(config_file)
        with pytest.raises(ValidationError):
            manager.update_settings(lock_backend="redis")
        assert manager.settings.lock_backend == "auto"
        assert not config_file.exists()

    def test_reload(self, config_file):
        manager = ConfigManager(config_file)
        config_file.parent.mkdir(parents=True)
        config_file.write_text(json.dumps({"auto_cleanup_days": 1}))

        manager.reload()
        assert manager.settings.auto_cleanup_days == 1
