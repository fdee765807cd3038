import pytest
from pydantic import ValidationError

from pipebricks.settings import EngineSettings


def test_defaults():
    settings = EngineSettings()

    assert settings.log_level == "INFO"
    assert settings.scheduler_poll_seconds == 60
    assert settings.default_sample_size == 10
    assert settings.automap_threshold == 0.6
    assert settings.failed_run_retention_days == 7


def test_from_env_reads_prefixed_variables(monkeypatch):
    monkeypatch.setenv("PIPEBRICKS_SCHEDULER_POLL_SECONDS", "5")
    monkeypatch.setenv("PIPEBRICKS_MAX_WORKERS", "8")
    monkeypatch.setenv("PIPEBRICKS_AUTOMAP_THRESHOLD", "")

    settings = EngineSettings.from_env()

    assert settings.scheduler_poll_seconds == 5.0
    assert settings.max_workers == 8
    assert settings.automap_threshold == 0.6


def test_overrides_win_over_env(monkeypatch):
    monkeypatch.setenv("PIPEBRICKS_LOG_LEVEL", "DEBUG")

    assert EngineSettings.from_env(log_level="WARNING").log_level == "WARNING"


def test_invalid_env_values_are_rejected(monkeypatch):
    monkeypatch.setenv("PIPEBRICKS_MAX_WORKERS", "0")

    with pytest.raises(ValidationError):
        EngineSettings.from_env()
