from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, computed_field, field_validator

from pipebricks.core.contracts import RunStatus
from pipebricks.core.utils import ensure_utc, new_id


class PipelineRunLog(BaseModel):
    """History entry for one execution of a pipeline.

    Created as Running and finalized exactly once; afterwards only the snapshot
    reaper touches ``config_snapshot`` and ``snapshot_expires_at``.
    """

    id: str = Field(default_factory=new_id)
    pipeline_id: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    status: RunStatus = RunStatus.RUNNING
    rows_processed: int = 0
    rows_skipped: int = 0
    error_message: Optional[str] = None
    stage: Optional[str] = None
    triggered_by: Optional[str] = None
    retry_of_run_id: Optional[str] = None
    config_snapshot: Optional[str] = None
    snapshot_expires_at: Optional[datetime] = None

    @field_validator("started_at", "finished_at", "snapshot_expires_at")
    @classmethod
    def _utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v)

    @computed_field  # type: ignore[misc]
    @property
    def duration_ms(self) -> Optional[int]:
        if self.finished_at is None:
            return None
        return int((self.finished_at - self.started_at).total_seconds() * 1000)

    @computed_field  # type: ignore[misc]
    @property
    def snapshot_available(self) -> bool:
        return bool(self.config_snapshot)

    def snapshot_is_live(self, now: datetime) -> bool:
        """True when a snapshot exists and has not expired at ``now``."""
        if not self.config_snapshot:
            return False
        if self.snapshot_expires_at is None:
            return True
        return ensure_utc(now) < self.snapshot_expires_at


class RecordError(BaseModel):
    index: int
    message: str
    record: Dict[str, Any] = Field(default_factory=dict)


class DryRunResult(BaseModel):
    source_preview: List[Dict[str, Any]] = Field(default_factory=list)
    mapped_preview: List[Dict[str, Any]] = Field(default_factory=list)
    transformed_preview: List[Dict[str, Any]] = Field(default_factory=list)
    errors: List[RecordError] = Field(default_factory=list)


class ConnectionTestResult(BaseModel):
    success: bool
    error_message: Optional[str] = None
    elapsed_ms: int = 0


class SystemSettings(BaseModel):
    failed_run_retention_days: int = Field(default=7, ge=1)
