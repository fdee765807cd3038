from __future__ import annotations

import threading
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from pipebricks.core.exceptions import PipelineNotFound, RunNotFound
from pipebricks.core.utils import ensure_utc
from pipebricks.models.pipeline import Pipeline
from pipebricks.models.run_log import PipelineRunLog, SystemSettings


class PipelineRepository(Protocol):
    def get(self, pipeline_id: str) -> Optional[Pipeline]:
        ...

    def list(self) -> List[Pipeline]:
        ...

    def save(self, pipeline: Pipeline) -> Pipeline:
        ...

    def delete(self, pipeline_id: str) -> None:
        ...

    def patch(self, pipeline_id: str, changes: Dict[str, Any]) -> Pipeline:
        """Atomically update the given fields on the stored pipeline."""
        ...


class RunLogRepository(Protocol):
    def add(self, run: PipelineRunLog) -> PipelineRunLog:
        ...

    def get(self, run_id: str) -> Optional[PipelineRunLog]:
        ...

    def update(self, run: PipelineRunLog) -> PipelineRunLog:
        ...

    def list_for_pipeline(self, pipeline_id: str) -> List[PipelineRunLog]:
        ...

    def clear_expired_snapshots(self, now: datetime) -> int:
        """Drop snapshots whose expiry is at or before ``now``; return how many were cleared."""
        ...


class SettingsRepository(Protocol):
    def get(self) -> SystemSettings:
        ...


class InMemoryPipelineRepository:
    def __init__(self, initial: Optional[List[Pipeline]] = None):
        self._lock = threading.Lock()
        self._data: Dict[str, Pipeline] = {p.id: p.model_copy(deep=True) for p in (initial or [])}

    def get(self, pipeline_id: str) -> Optional[Pipeline]:
        with self._lock:
            found = self._data.get(pipeline_id)
            return found.model_copy(deep=True) if found is not None else None

    def list(self) -> List[Pipeline]:
        with self._lock:
            return [p.model_copy(deep=True) for p in self._data.values()]

    def save(self, pipeline: Pipeline) -> Pipeline:
        with self._lock:
            self._data[pipeline.id] = pipeline.model_copy(deep=True)
        return pipeline

    def delete(self, pipeline_id: str) -> None:
        with self._lock:
            self._data.pop(pipeline_id, None)

    def patch(self, pipeline_id: str, changes: Dict[str, Any]) -> Pipeline:
        with self._lock:
            current = self._data.get(pipeline_id)
            if current is None:
                raise PipelineNotFound(pipeline_id)
            updated = current.model_copy(update=dict(changes), deep=True)
            self._data[pipeline_id] = updated
            return updated.model_copy(deep=True)


class InMemoryRunLogRepository:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._data: Dict[str, PipelineRunLog] = {}

    def add(self, run: PipelineRunLog) -> PipelineRunLog:
        with self._lock:
            self._data[run.id] = run.model_copy(deep=True)
        return run

    def get(self, run_id: str) -> Optional[PipelineRunLog]:
        with self._lock:
            found = self._data.get(run_id)
            return found.model_copy(deep=True) if found is not None else None

    def update(self, run: PipelineRunLog) -> PipelineRunLog:
        with self._lock:
            if run.id not in self._data:
                raise RunNotFound(run.id)
            self._data[run.id] = run.model_copy(deep=True)
        return run

    def list_for_pipeline(self, pipeline_id: str) -> List[PipelineRunLog]:
        with self._lock:
            runs = [r.model_copy(deep=True) for r in self._data.values() if r.pipeline_id == pipeline_id]
        return sorted(runs, key=lambda r: r.started_at, reverse=True)

    def clear_expired_snapshots(self, now: datetime) -> int:
        now = ensure_utc(now)
        cleared = 0
        with self._lock:
            for run_id, run in list(self._data.items()):
                if run.config_snapshot and run.snapshot_expires_at is not None and run.snapshot_expires_at <= now:
                    self._data[run_id] = run.model_copy(update={"config_snapshot": None, "snapshot_expires_at": None})
                    cleared += 1
        return cleared


class InMemorySettingsRepository:
    def __init__(self, settings: Optional[SystemSettings] = None):
        self._settings = settings or SystemSettings()

    def get(self) -> SystemSettings:
        return self._settings.model_copy()

    def set(self, settings: SystemSettings) -> None:
        self._settings = settings.model_copy()
