from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class EngineSettings(BaseSettings):
    """Runtime knobs for the engine, overridable from ``PIPEBRICKS_*`` environment variables.

    PIPEBRICKS_LOG_LEVEL: DEBUG | INFO | WARNING | ERROR (default: INFO)
    PIPEBRICKS_SCHEDULER_POLL_SECONDS: float (default: 60)
    PIPEBRICKS_SNAPSHOT_PURGE_HOURS: float (default: 24)
    PIPEBRICKS_MAX_WORKERS: int (default: 4)
    PIPEBRICKS_DEFAULT_SAMPLE_SIZE: int (default: 10)
    PIPEBRICKS_AUTOMAP_THRESHOLD: float (default: 0.6)
    PIPEBRICKS_AUTOMAP_MARGIN: float (default: 0.05)
    PIPEBRICKS_FAILED_RUN_RETENTION_DAYS: int (default: 7)

    Empty variables are ignored.
    """

    model_config = SettingsConfigDict(env_prefix="PIPEBRICKS_", env_ignore_empty=True, extra="ignore")

    log_level: str = "INFO"
    scheduler_poll_seconds: float = Field(default=60.0, gt=0)
    snapshot_purge_hours: float = Field(default=24.0, gt=0)
    max_workers: int = Field(default=4, ge=1)
    default_sample_size: int = Field(default=10, ge=1)
    automap_threshold: float = Field(default=0.6, ge=0.0, le=1.0)
    automap_margin: float = Field(default=0.05, ge=0.0, le=1.0)
    failed_run_retention_days: int = Field(default=7, ge=1)

    @classmethod
    def from_env(cls, **overrides: object) -> "EngineSettings":
        """Load from the environment; keyword overrides win over env values."""
        return cls(**overrides)
