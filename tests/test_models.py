import json
from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from pipebricks.core.contracts import RunStatus
from pipebricks.models.pipeline import DataSourceConfig, Pipeline
from pipebricks.models.run_log import PipelineRunLog, SystemSettings

T0 = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

SOURCE = {"type": "csv", "connection_string": "in.csv"}
DEST = {"type": "webhook", "connection_string": "https://hooks.example.test", "schema": "id, name ,email"}


def test_schedule_enabled_requires_valid_cron():
    with pytest.raises(ValidationError, match="cron_expression"):
        Pipeline(name="p", source=SOURCE, destination=DEST, schedule_enabled=True)

    with pytest.raises(ValidationError, match="cron_expression"):
        Pipeline(name="p", source=SOURCE, destination=DEST, schedule_enabled=True, cron_expression="every day")

    ok = Pipeline(name="p", source=SOURCE, destination=DEST, schedule_enabled=True, cron_expression="*/5 * * * *")
    assert ok.schedule_enabled


def test_duplicate_destination_fields_rejected():
    with pytest.raises(ValidationError, match="duplicate destination field"):
        Pipeline(
            name="p",
            source=SOURCE,
            destination=DEST,
            field_mappings=[
                {"source_field": "a", "destination_field": "x"},
                {"source_field": "b", "destination_field": "x"},
            ],
        )


@pytest.mark.parametrize("field,value", [("batch_size", 0), ("batch_size", -3), ("batch_delay_seconds", -1)])
def test_batch_settings_validated(field, value):
    with pytest.raises(ValidationError):
        Pipeline(name="p", source=SOURCE, destination=DEST, **{field: value})


def test_data_source_config_schema_alias_and_fields():
    cfg = DataSourceConfig.model_validate(DEST)

    assert cfg.schema_text == "id, name ,email"
    assert cfg.schema_fields == ["id", "name", "email"]
    assert cfg.model_dump(by_alias=True)["schema"] == "id, name ,email"


def test_parameters_are_stringified_and_profile_id_exposed():
    cfg = DataSourceConfig(type="postgresql", parameters={"limit": 10, "connectionProfileId": "prof-1"})

    assert cfg.parameters["limit"] == "10"
    assert cfg.connection_profile_id == "prof-1"


def test_snapshot_round_trips_into_pipeline():
    p = Pipeline(
        name="p",
        source=SOURCE,
        destination=DEST,
        transformations=["name = UPPER(name)"],
        batch_size=10,
        incremental_field="updated_at",
        last_incremental_value="5",
    )

    restored = Pipeline.model_validate(json.loads(json.dumps(p.snapshot())))

    assert restored.id == p.id
    assert restored.destination.schema_fields == ["id", "name", "email"]
    assert restored.transformations == ["name = UPPER(name)"]
    assert restored.batch_size == 10
    assert restored.last_incremental_value == "5"


def test_run_log_derived_fields():
    run = PipelineRunLog(pipeline_id="p", started_at=T0)
    assert run.status == RunStatus.RUNNING
    assert run.duration_ms is None
    assert run.snapshot_available is False

    done = run.model_copy(
        update={
            "finished_at": T0 + timedelta(seconds=2, milliseconds=500),
            "config_snapshot": "{}",
            "snapshot_expires_at": T0 + timedelta(days=7),
        }
    )
    assert done.duration_ms == 2500
    assert done.snapshot_available is True
    assert done.snapshot_is_live(T0 + timedelta(days=6)) is True
    assert done.snapshot_is_live(T0 + timedelta(days=7)) is False


def test_naive_datetimes_are_treated_as_utc():
    run = PipelineRunLog(pipeline_id="p", started_at=datetime(2024, 3, 1, 12, 0))
    assert run.started_at == T0


def test_system_settings_retention_minimum():
    with pytest.raises(ValidationError):
        SystemSettings(failed_run_retention_days=0)
