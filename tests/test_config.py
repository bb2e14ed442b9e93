"""Tests for settings loading."""
from pathlib import Path

from botscheduler.config import Settings, setup_logging


class TestSettings:
    def test_defaults(self, monkeypatch):
        for name in ("BOTSCHEDULER_POLL_INTERVAL", "BOTSCHEDULER_TIMEZONE", "DEBUG", "LOG_LEVEL"):
            monkeypatch.delenv(name, raising=False)

        config = Settings.from_env()

        assert config.poll_interval_seconds == 60
        assert config.default_timezone == "UTC"
        assert config.log_level == "INFO"
        assert config.debug is False

    def test_environment_overrides(self, monkeypatch, tmp_path):
        monkeypatch.setenv("BOTSCHEDULER_DATA_DIR", str(tmp_path))
        monkeypatch.setenv("BOTSCHEDULER_POLL_INTERVAL", "15")
        monkeypatch.setenv("BOTSCHEDULER_OVERDUE_DELAY", "2.5")
        monkeypatch.setenv("BOTSCHEDULER_QUEUE_COMMAND", "lookup")
        monkeypatch.setenv("DEBUG", "true")
        monkeypatch.delenv("LOG_LEVEL", raising=False)

        config = Settings.from_env()

        assert config.data_dir == Path(tmp_path)
        assert config.poll_interval_seconds == 15
        assert config.overdue_delay_seconds == 2.5
        assert config.queue_command == "lookup"
        assert config.debug is True
        assert config.log_level == "DEBUG"

    def test_setup_logging_accepts_settings(self, tmp_path):
        setup_logging(Settings(data_dir=tmp_path, log_level="WARNING"))
