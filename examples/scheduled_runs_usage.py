"""
Example: Running, scheduling and retrying pipelines with RunOrchestrator.

This shows the split between:
- Pipeline definition: source, destination, mappings, transformations (from JSON/dict)
- Engine wiring: repositories, connection profiles, notifications and events
"""

import time

from pipebricks.core.connection_resolver import StaticConnectionResolver
from pipebricks.core.events import EventBus, StdoutObserver
from pipebricks.core.repositories import InMemoryPipelineRepository, InMemoryRunLogRepository
from pipebricks.models.pipeline import Pipeline
from pipebricks.notifications import NotificationDispatcher, NotificationSettings
from pipebricks.orchestrator import RunOrchestrator
from pipebricks.scheduler import Scheduler

pipeline = Pipeline.model_validate(
    {
        "name": "crm-contacts-to-warehouse",
        "source": {
            "type": "rest",
            "connection_string": "https://crm.example.test/api/contacts",
            "parameters": {"authType": "bearer", "bearerToken": "<token>", "recordsPath": "data"},
        },
        "destination": {
            "type": "postgresql",
            "parameters": {"connectionProfileId": "warehouse", "table": "staging.contacts"},
            "schema": "ContactId, FullName, Email, CreatedOn",
        },
        "transformations": [
            "FullName = TITLE_CASE(CONCAT(first_name, ' ', last_name))",
            "Email = LOWER(TRIM(Email))",
        ],
        "batch_size": 500,
        "batch_delay_seconds": 1,
        "schedule_enabled": True,
        "cron_expression": "*/15 * * * *",
    }
)

# =============================================================================
# Example 1: Wiring the engine
# =============================================================================
pipelines = InMemoryPipelineRepository([pipeline])
run_logs = InMemoryRunLogRepository()

bus = EventBus(observers=[StdoutObserver()])
bus.start()

orchestrator = RunOrchestrator(
    pipelines,
    run_logs,
    # Profile ids are resolved at run time; secrets never land in run snapshots
    connection_resolver=StaticConnectionResolver({"warehouse": "postgresql://etl@db/warehouse"}),
    notifier=NotificationDispatcher(settings_provider=lambda: NotificationSettings(notify_on_success=True)),
    event_bus=bus,
)


# =============================================================================
# Example 2: Automap, preview, then run once
# =============================================================================
mappings = orchestrator.automap(pipeline.id, save=True)
for m in mappings:
    print(f"{m.source_field} -> {m.destination_field} (score={m.automap_score})")

preview = orchestrator.dry_run(pipeline.id, sample_size=5)
print(f"Preview: {len(preview.transformed_preview)} rows, {len(preview.errors)} errors")

run = orchestrator.run_pipeline(pipeline.id, triggered_by="alice")
print(f"Run {run.id}: {run.status.value} rows={run.rows_processed} skipped={run.rows_skipped}")


# =============================================================================
# Example 3: Retrying a failed run
# =============================================================================
if run.status.value == "Failed":
    print(f"   Stage: {run.stage}")
    print(f"   Error: {run.error_message}")
    # Replays the configuration snapshot taken at failure time while it is retained
    retried = orchestrator.retry_run(run.id, triggered_by="alice")
    print(f"Retry {retried.id} of {retried.retry_of_run_id}: {retried.status.value}")


# =============================================================================
# Example 4: Background scheduling
# =============================================================================
scheduler = Scheduler(orchestrator, poll_seconds=30)
scheduler.start()
try:
    time.sleep(120)
finally:
    scheduler.stop(cancel_running=True)
    bus.shutdown()

for past in orchestrator.run_history(pipeline.id):
    print(f"{past.started_at:%Y-%m-%d %H:%M} {past.triggered_by:<10} {past.status.value} {past.duration_ms} ms")
