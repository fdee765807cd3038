from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from croniter import croniter

from pipebricks.core.exceptions import ConcurrentRunRejected
from pipebricks.core.logger import get_logger
from pipebricks.core.utils import ensure_utc
from pipebricks.models.pipeline import Pipeline
from pipebricks.models.run_log import PipelineRunLog
from pipebricks.orchestrator import RunOrchestrator

log = get_logger(__name__)

SCHEDULER_TRIGGER = "Scheduler"


def next_occurrence(cron_expression: str, now: datetime) -> datetime:
    """First cron occurrence strictly after ``now``."""
    now = ensure_utc(now)
    it = croniter(cron_expression, now)
    nxt = it.get_next(datetime)
    while nxt <= now:
        nxt = it.get_next(datetime)
    return ensure_utc(nxt)


class Scheduler:
    """
    Background loop that triggers due pipelines and reaps expired snapshots.

    Every ``poll_seconds`` the loop calls ``tick``: each pipeline with
    scheduling enabled and ``next_run_at <= now`` is submitted to a worker
    pool and its ``next_run_at`` is moved to the next cron occurrence, whether
    or not the run succeeds. Once per ``purge_interval`` expired run snapshots
    are cleared. A failure on one pipeline is logged and never stops the tick.
    """

    def __init__(
        self,
        orchestrator: RunOrchestrator,
        *,
        poll_seconds: Optional[float] = None,
        purge_interval: Optional[timedelta] = None,
        max_workers: Optional[int] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        settings = orchestrator.engine_settings
        self.orchestrator = orchestrator
        self.poll_seconds = poll_seconds if poll_seconds is not None else settings.scheduler_poll_seconds
        self.purge_interval = purge_interval or timedelta(hours=settings.snapshot_purge_hours)
        self._clock = clock or orchestrator.now
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers or settings.max_workers, thread_name_prefix="pipebricks-run"
        )
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._last_purge: Optional[datetime] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="pipebricks-scheduler", daemon=True)
        self._thread.start()
        log.info(f"Scheduler started (poll every {self.poll_seconds}s)")

    def stop(self, *, cancel_running: bool = False, wait: bool = True) -> None:
        """Stop the loop; optionally signal in-flight runs to cancel at their next boundary."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=max(self.poll_seconds, 1.0) + 5.0)
            self._thread = None
        if cancel_running:
            self.orchestrator.guard.cancel_all()
        self._executor.shutdown(wait=wait)
        log.info("Scheduler stopped")

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.tick()
            except Exception:
                log.exception("Scheduler tick failed")
            self._stop.wait(self.poll_seconds)

    def tick(self, now: Optional[datetime] = None) -> List["Future[Optional[PipelineRunLog]]"]:
        """Run one scheduling pass and return the futures of the runs it submitted."""
        now = ensure_utc(now or self._clock())
        submitted: List[Future] = []
        for pipeline in self.orchestrator.pipelines.list():
            try:
                future = self._consider(pipeline, now)
            except Exception:
                log.exception(f"Scheduling failed for pipeline {pipeline.id}")
                continue
            if future is not None:
                submitted.append(future)
        self._maybe_purge(now)
        return submitted

    def _consider(self, pipeline: Pipeline, now: datetime) -> Optional["Future[Optional[PipelineRunLog]]"]:
        if not pipeline.schedule_enabled:
            return None

        expr = pipeline.cron_expression or ""
        if not croniter.is_valid(expr):
            log.error(f"Pipeline {pipeline.id} has invalid cron expression {expr!r}; disabling its schedule")
            self.orchestrator.pipelines.patch(pipeline.id, {"schedule_enabled": False, "next_run_at": None})
            return None

        if pipeline.next_run_at is None:
            self.orchestrator.pipelines.patch(pipeline.id, {"next_run_at": next_occurrence(expr, now)})
            return None

        if pipeline.next_run_at > now:
            return None

        self.orchestrator.pipelines.patch(pipeline.id, {"next_run_at": next_occurrence(expr, now)})
        if self.orchestrator.guard.is_running(pipeline.id):
            log.warning(f"Pipeline {pipeline.id} is still running; skipping scheduled trigger")
            return None
        log.info(f"Triggering scheduled run of pipeline '{pipeline.name}'")
        return self._executor.submit(self._run_scheduled, pipeline.id)

    def _run_scheduled(self, pipeline_id: str) -> Optional[PipelineRunLog]:
        try:
            return self.orchestrator.run_pipeline(pipeline_id, triggered_by=SCHEDULER_TRIGGER)
        except ConcurrentRunRejected as exc:
            log.warning(str(exc))
        except Exception:
            log.exception(f"Scheduled run of pipeline {pipeline_id} raised")
        return None

    def _maybe_purge(self, now: datetime) -> None:
        if self._last_purge is not None and now - self._last_purge < self.purge_interval:
            return
        self._last_purge = now
        try:
            self.orchestrator.purge_expired_snapshots(now)
        except Exception:
            log.exception("Snapshot purge failed")
