from datetime import datetime, timedelta, timezone

import pytest

from pipebricks.core.exceptions import PipelineNotFound
from pipebricks.core.repositories import (
    InMemoryPipelineRepository,
    InMemoryRunLogRepository,
    InMemorySettingsRepository,
)
from pipebricks.models.pipeline import Pipeline
from pipebricks.models.run_log import PipelineRunLog, SystemSettings

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _pipeline(**overrides) -> Pipeline:
    data = {
        "name": "orders",
        "source": {"type": "csv", "connection_string": "in.csv"},
        "destination": {"type": "csv", "connection_string": "out.csv"},
    }
    data.update(overrides)
    return Pipeline(**data)


def test_pipeline_repository_round_trip():
    repo = InMemoryPipelineRepository()
    assert repo.get("missing") is None

    p = repo.save(_pipeline())
    assert repo.get(p.id).name == "orders"
    assert [x.id for x in repo.list()] == [p.id]

    repo.delete(p.id)
    assert repo.get(p.id) is None


def test_pipeline_repository_returns_copies():
    repo = InMemoryPipelineRepository([_pipeline(id="p1")])

    fetched = repo.get("p1")
    fetched.name = "changed"

    assert repo.get("p1").name == "orders"


def test_patch_updates_only_given_fields():
    repo = InMemoryPipelineRepository([_pipeline(id="p1", incremental_field="updated_at")])

    updated = repo.patch("p1", {"last_incremental_value": "2024-01-02"})

    assert updated.last_incremental_value == "2024-01-02"
    assert repo.get("p1").incremental_field == "updated_at"


def test_patch_missing_pipeline_raises():
    with pytest.raises(PipelineNotFound):
        InMemoryPipelineRepository().patch("nope", {"name": "x"})


def test_run_log_repository_lists_newest_first():
    repo = InMemoryRunLogRepository()
    older = repo.add(PipelineRunLog(pipeline_id="p1", started_at=T0))
    newer = repo.add(PipelineRunLog(pipeline_id="p1", started_at=T0 + timedelta(hours=1)))
    repo.add(PipelineRunLog(pipeline_id="p2", started_at=T0))

    assert [r.id for r in repo.list_for_pipeline("p1")] == [newer.id, older.id]


def test_clear_expired_snapshots_only_touches_expired_ones():
    repo = InMemoryRunLogRepository()
    expired = repo.add(
        PipelineRunLog(
            pipeline_id="p1",
            started_at=T0,
            config_snapshot="{}",
            snapshot_expires_at=T0 + timedelta(days=1),
        )
    )
    live = repo.add(
        PipelineRunLog(
            pipeline_id="p1",
            started_at=T0,
            config_snapshot="{}",
            snapshot_expires_at=T0 + timedelta(days=10),
        )
    )

    cleared = repo.clear_expired_snapshots(T0 + timedelta(days=2))

    assert cleared == 1
    assert repo.get(expired.id).config_snapshot is None
    assert repo.get(expired.id).snapshot_available is False
    assert repo.get(live.id).config_snapshot == "{}"


def test_settings_repository_defaults():
    repo = InMemorySettingsRepository()
    assert repo.get().failed_run_retention_days == 7

    repo.set(SystemSettings(failed_run_retention_days=3))
    assert repo.get().failed_run_retention_days == 3
