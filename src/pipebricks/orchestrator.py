from __future__ import annotations

import json
import time
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Callable, Iterator, List, Optional, Sequence, Union

from pipebricks.bootstrap import load_builtin_connectors
from pipebricks.connectors import registry
from pipebricks.connectors.watermark import compare_values, max_watermark
from pipebricks.core.connection_resolver import ConnectionResolver, resolve_connection
from pipebricks.core.contracts import CancellationToken, RunContext, RunStatus, Stage
from pipebricks.core.events import EventBus, timed_stage
from pipebricks.core.exceptions import (
    PipelineExecutionError,
    PipelineNotFound,
    PipebricksError,
    RunCancelledError,
    RunNotFound,
    ValidationError,
)
from pipebricks.core.logger import get_logger, push_run_id, reset_run_id
from pipebricks.core.repositories import (
    InMemorySettingsRepository,
    PipelineRepository,
    RunLogRepository,
    SettingsRepository,
)
from pipebricks.core.utils import ensure_utc, utcnow
from pipebricks.engine.batching import BatchWriter
from pipebricks.engine.dry_run import build_dry_run
from pipebricks.engine.mapping import apply_field_mappings, automap, check_field_mappings
from pipebricks.engine.run_guard import PipelineRunGuard
from pipebricks.engine.transformations import apply_transformations, compile_transformations
from pipebricks.models.pipeline import DataSourceConfig, FieldMap, Pipeline
from pipebricks.models.run_log import ConnectionTestResult, DryRunResult, PipelineRunLog, SystemSettings
from pipebricks.notifications import NotificationDispatcher
from pipebricks.settings import EngineSettings

log = get_logger(__name__)

Clock = Callable[[], datetime]


class RunOrchestrator:
    """
    Executes pipelines and owns the run-log lifecycle.

    A run walks the stages SourceRead, Mapping, Transform and DestinationWrite
    in order. The run log is created as Running before the first stage and
    finalized exactly once:

    * Success: ``rows_processed`` is the number of rows written and, for
      incremental pipelines, the live pipeline's watermark advances.
    * Failed: the failing stage, the flattened error chain and the rows
      already written are recorded, together with a JSON snapshot of the
      configuration that was executed. The snapshot expires after the
      configured retention and is what ``retry_run`` replays.

    Only one run per pipeline may be in flight; a concurrent request raises
    ``ConcurrentRunRejected`` before any run log is created.

    Example:
        >>> orchestrator = RunOrchestrator(pipelines, run_logs)
        >>> run = orchestrator.run_pipeline(pipeline.id, triggered_by="alice")
        >>> run.status
        <RunStatus.SUCCESS: 'Success'>
    """

    def __init__(
        self,
        pipelines: PipelineRepository,
        run_logs: RunLogRepository,
        settings: Optional[SettingsRepository] = None,
        *,
        notifier: Optional[NotificationDispatcher] = None,
        connection_resolver: Optional[ConnectionResolver] = None,
        event_bus: Optional[EventBus] = None,
        engine_settings: Optional[EngineSettings] = None,
        guard: Optional[PipelineRunGuard] = None,
        clock: Clock = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.engine_settings = engine_settings or EngineSettings()
        self.pipelines = pipelines
        self.run_logs = run_logs
        self.settings = settings or InMemorySettingsRepository(
            SystemSettings(failed_run_retention_days=self.engine_settings.failed_run_retention_days)
        )
        self.notifier = notifier or NotificationDispatcher()
        self.connection_resolver = connection_resolver
        self.event_bus = event_bus
        self.guard = guard or PipelineRunGuard()
        self._clock = clock
        self._sleep = sleep
        load_builtin_connectors()

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def now(self) -> datetime:
        return ensure_utc(self._clock())

    def run_pipeline(
        self,
        pipeline_id: str,
        triggered_by: Optional[str] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> PipelineRunLog:
        """Run the live configuration of ``pipeline_id`` and return the finalized run log."""
        pipeline = self._require_pipeline(pipeline_id)
        return self._execute(pipeline, triggered_by or "Manual", cancel_token=cancel_token)

    def retry_run(self, run_id: str, triggered_by: Optional[str] = None) -> PipelineRunLog:
        """Re-execute a failed run from its snapshot, or from the live pipeline once the snapshot expired."""
        previous = self.run_logs.get(run_id)
        if previous is None:
            raise RunNotFound(run_id)
        if previous.status != RunStatus.FAILED:
            raise ValidationError(f"Only failed runs can be retried; run {run_id} is {previous.status.value}")

        if previous.snapshot_is_live(self.now()):
            pipeline = Pipeline.model_validate(json.loads(previous.config_snapshot or "{}"))
            log.info(f"Retrying run {run_id} from its configuration snapshot")
        else:
            pipeline = self._require_pipeline(previous.pipeline_id)
            log.info(f"Snapshot of run {run_id} is unavailable; retrying with the live configuration")
        return self._execute(pipeline, triggered_by or "Retry", retry_of_run_id=run_id)

    def cancel(self, pipeline_id: str) -> bool:
        cancelled = self.guard.cancel(pipeline_id)
        if cancelled:
            log.info(f"Cancellation requested for pipeline {pipeline_id}")
        return cancelled

    def dry_run(self, pipeline: Union[str, Pipeline], sample_size: Optional[int] = None) -> DryRunResult:
        if isinstance(pipeline, str):
            pipeline = self._require_pipeline(pipeline)
        resolved = pipeline.model_copy(
            update={
                "source": resolve_connection(pipeline.source, self.connection_resolver),
                "destination": resolve_connection(pipeline.destination, self.connection_resolver),
            }
        )
        reader = registry.resolve_source_reader(pipeline.source.type)
        writer = registry.resolve_destination_writer(pipeline.destination.type)
        size = self.engine_settings.default_sample_size if sample_size is None else sample_size
        return build_dry_run(resolved, reader, writer, size)

    def test_source_schema(self, source: DataSourceConfig) -> List[str]:
        """Field names the source currently exposes."""
        reader = registry.resolve_source_reader(source.type)
        return reader.discover_schema(resolve_connection(source, self.connection_resolver))

    def automap(
        self,
        pipeline_id: str,
        source_fields: Optional[Sequence[str]] = None,
        destination_fields: Optional[Sequence[str]] = None,
        *,
        save: bool = False,
    ) -> List[FieldMap]:
        """Propose mappings for ``pipeline_id``, keeping its existing manual mappings.

        Source fields default to the discovered source schema and destination
        fields to the destination's comma separated ``schema`` text.
        """
        pipeline = self._require_pipeline(pipeline_id)
        if source_fields is None:
            source_fields = self.test_source_schema(pipeline.source)
        if destination_fields is None:
            destination_fields = pipeline.destination.schema_fields
        manual = [m for m in pipeline.field_mappings if not m.is_automapped]
        mappings = automap(
            source_fields,
            destination_fields,
            manual,
            threshold=self.engine_settings.automap_threshold,
            margin=self.engine_settings.automap_margin,
        )
        if save:
            self.pipelines.patch(pipeline_id, {"field_mappings": mappings})
        return mappings

    def test_connection(self, provider: str, connection_string: str) -> ConnectionTestResult:
        return registry.test_connection(provider, connection_string)

    def purge_expired_snapshots(self, now: Optional[datetime] = None) -> int:
        cleared = self.run_logs.clear_expired_snapshots(ensure_utc(now) if now else self.now())
        if cleared:
            log.info(f"Cleared {cleared} expired run snapshots")
        return cleared

    def run_history(self, pipeline_id: str) -> List[PipelineRunLog]:
        return self.run_logs.list_for_pipeline(pipeline_id)

    # ------------------------------------------------------------------
    # Run lifecycle
    # ------------------------------------------------------------------

    def _require_pipeline(self, pipeline_id: str) -> Pipeline:
        pipeline = self.pipelines.get(pipeline_id)
        if pipeline is None:
            raise PipelineNotFound(pipeline_id)
        return pipeline

    def _execute(
        self,
        pipeline: Pipeline,
        triggered_by: str,
        *,
        retry_of_run_id: Optional[str] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> PipelineRunLog:
        token = self.guard.acquire(pipeline.id, cancel_token)
        try:
            run = PipelineRunLog(
                pipeline_id=pipeline.id,
                started_at=self.now(),
                triggered_by=triggered_by,
                retry_of_run_id=retry_of_run_id,
            )
            self.run_logs.add(run)
            ctx = RunContext(
                run_id=run.id,
                pipeline_id=pipeline.id,
                pipeline_name=pipeline.name,
                triggered_by=triggered_by,
                started_at=run.started_at,
                retry_of_run_id=retry_of_run_id,
                cancel_token=token,
            )
            run_token = push_run_id(run.id)
            try:
                log.info(f"Pipeline '{pipeline.name}' run started (triggered_by={triggered_by})")
                self._publish(ctx, "run", "started")
                try:
                    self._run_stages(pipeline, ctx)
                except PipelineExecutionError as exc:
                    return self._finalize_failure(pipeline, run, ctx, exc)
                return self._finalize_success(pipeline, run, ctx)
            finally:
                reset_run_id(run_token)
        finally:
            self.guard.release(pipeline.id)

    @contextmanager
    def _stage(self, stage: Stage, ctx: RunContext) -> Iterator[timed_stage]:
        if ctx.cancel_token.cancelled:
            raise RunCancelledError(stage.value, rows_written=ctx.rows_written)
        try:
            with timed_stage(
                self.event_bus, stage.value, pipeline_id=ctx.pipeline_id, pipeline_name=ctx.pipeline_name
            ) as timer:
                yield timer
        except PipelineExecutionError:
            raise
        except Exception as exc:
            rows = getattr(exc, "rows_written", ctx.rows_written)
            ctx.rows_written = rows
            raise PipelineExecutionError(stage.value, exc.__class__.__name__, rows_written=rows) from exc

    def _run_stages(self, pipeline: Pipeline, ctx: RunContext) -> None:
        with self._stage(Stage.SOURCE_READ, ctx) as timer:
            reader = registry.resolve_source_reader(pipeline.source.type)
            source_cfg = resolve_connection(pipeline.source, self.connection_resolver)
            if pipeline.incremental_field and reader.supports_watermark:
                records = reader.read(source_cfg, pipeline.incremental_field, pipeline.last_incremental_value)
            else:
                if pipeline.incremental_field:
                    log.info(f"{pipeline.source.type} reader does not filter by watermark; reading all records")
                records = reader.read(source_cfg)
            timer.counts = {"records_read": len(records)}
            log.info(f"Read {len(records)} records from {pipeline.source.type}")
        if pipeline.incremental_field:
            ctx.metadata["watermark"] = max_watermark(
                records, pipeline.incremental_field, pipeline.last_incremental_value
            )

        with self._stage(Stage.MAPPING, ctx) as timer:
            check_field_mappings(pipeline.field_mappings)
            mapped = apply_field_mappings(records, pipeline.field_mappings)
            timer.counts = {"records_mapped": len(mapped)}

        with self._stage(Stage.TRANSFORM, ctx) as timer:
            compiled = compile_transformations(pipeline.transformations)
            outcome = apply_transformations(mapped, compiled)
            ctx.rows_skipped = len(outcome.errors)
            ctx.errors = [e.message for e in outcome.errors]
            timer.counts = {"records_transformed": len(outcome.records), "records_skipped": ctx.rows_skipped}
            if outcome.errors:
                log.warning(f"{len(outcome.errors)} records skipped by transformations")

        with self._stage(Stage.DESTINATION_WRITE, ctx) as timer:
            writer = registry.resolve_destination_writer(pipeline.destination.type)
            dest_cfg = resolve_connection(pipeline.destination, self.connection_resolver)
            batch_writer = BatchWriter(
                writer,
                batch_size=pipeline.batch_size,
                delay_seconds=pipeline.batch_delay_seconds,
                sleep=self._sleep,
                cancel_token=ctx.cancel_token,
            )
            try:
                batch_writer.write(dest_cfg, outcome.records)
            finally:
                ctx.rows_written = batch_writer.rows_written
            timer.counts = {"records_written": ctx.rows_written, "chunks": len(batch_writer.chunk_sizes)}
            log.info(f"Wrote {ctx.rows_written} records to {pipeline.destination.type}")

    def _finalize_success(self, pipeline: Pipeline, run: PipelineRunLog, ctx: RunContext) -> PipelineRunLog:
        finished = self.now()
        run = run.model_copy(
            update={
                "status": RunStatus.SUCCESS,
                "finished_at": finished,
                "rows_processed": ctx.rows_written,
                "rows_skipped": ctx.rows_skipped,
            }
        )
        self.run_logs.update(run)
        self._advance_watermark(pipeline, ctx.metadata.get("watermark"))
        log.info(f"Pipeline '{pipeline.name}' completed: {run.rows_processed} rows in {run.duration_ms} ms")
        self._publish(
            ctx,
            "run",
            "completed",
            counts={"rows_processed": run.rows_processed, "rows_skipped": run.rows_skipped},
            details={"skipped_errors": ctx.errors[:20]} if ctx.errors else None,
        )
        self.notifier.notify_success(
            pipeline_name=pipeline.name,
            pipeline_id=pipeline.id,
            rows_processed=run.rows_processed,
            triggered_by=run.triggered_by,
            completed_at=finished,
        )
        return run

    def _finalize_failure(
        self, pipeline: Pipeline, run: PipelineRunLog, ctx: RunContext, exc: PipelineExecutionError
    ) -> PipelineRunLog:
        finished = self.now()
        retention = self._retention_days()
        run = run.model_copy(
            update={
                "status": RunStatus.FAILED,
                "finished_at": finished,
                "stage": exc.stage,
                "error_message": exc.detailed_message,
                "rows_processed": exc.rows_written,
                "rows_skipped": ctx.rows_skipped,
                "config_snapshot": json.dumps(pipeline.snapshot()),
                "snapshot_expires_at": finished + timedelta(days=retention),
            }
        )
        self.run_logs.update(run)
        log.error(f"Pipeline '{pipeline.name}' failed in {exc.stage}: {run.error_message}")
        self._publish(
            ctx,
            "run",
            "failed",
            counts={"rows_processed": run.rows_processed},
            error={"code": exc.__class__.__name__, "message": run.error_message, "stage": exc.stage},
        )
        self.notifier.notify_failure(
            pipeline_name=pipeline.name,
            pipeline_id=pipeline.id,
            error_message=run.error_message or "",
            stage=exc.stage,
            triggered_by=run.triggered_by,
            failed_at=finished,
        )
        return run

    def _retention_days(self) -> int:
        try:
            days = self.settings.get().failed_run_retention_days
        except Exception as exc:
            log.warning(f"Could not read system settings, using default snapshot retention: {exc}")
            days = self.engine_settings.failed_run_retention_days
        return max(1, days)

    def _advance_watermark(self, pipeline: Pipeline, watermark: Optional[str]) -> None:
        if not pipeline.incremental_field or watermark is None:
            return
        try:
            live = self._require_pipeline(pipeline.id)
            if live.last_incremental_value is not None and compare_values(watermark, live.last_incremental_value) <= 0:
                return
            self.pipelines.patch(pipeline.id, {"last_incremental_value": watermark})
            log.info(f"Watermark for {pipeline.incremental_field} advanced to {watermark!r}")
        except PipebricksError as exc:
            log.warning(f"Could not advance watermark for pipeline {pipeline.id}: {exc}")

    def _publish(self, ctx: RunContext, stage: str, status: str, **kwargs) -> None:
        if self.event_bus is None:
            return
        self.event_bus.publish(
            stage=stage,
            status=status,
            run_id=ctx.run_id,
            pipeline_id=ctx.pipeline_id,
            pipeline_name=ctx.pipeline_name,
            **kwargs,
        )
