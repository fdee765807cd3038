from unittest.mock import MagicMock

import pytest

from pipebricks.connectors.base import BaseDestinationWriter
from pipebricks.core.contracts import CancellationToken
from pipebricks.core.exceptions import BatchWriteError, RunCancelledError
from pipebricks.engine.batching import BatchWriter, chunked
from pipebricks.models.pipeline import DataSourceConfig

CONFIG = DataSourceConfig(type="fake", connection_string="mem://")


class RecordingWriter(BaseDestinationWriter):
    connector_type = "fake"

    def __init__(self, fail_on_call=None):
        self.calls = []
        self.fail_on_call = fail_on_call

    def write(self, config, records):
        self.calls.append(list(records))
        if self.fail_on_call is not None and len(self.calls) == self.fail_on_call:
            raise RuntimeError("destination rejected chunk")
        return len(records)


def _records(n):
    return [{"id": i} for i in range(n)]


def test_chunked_splits_into_consecutive_chunks():
    assert [len(c) for c in chunked(_records(25), 10)] == [10, 10, 5]
    assert [len(c) for c in chunked(_records(25), None)] == [25]
    assert [len(c) for c in chunked(_records(3), 0)] == [3]
    assert list(chunked([], 10)) == []


def test_batch_writer_sleeps_only_between_chunks():
    writer = RecordingWriter()
    sleep = MagicMock()

    bw = BatchWriter(writer, batch_size=10, delay_seconds=1.5, sleep=sleep)
    total = bw.write(CONFIG, _records(25))

    assert total == 25
    assert bw.chunk_sizes == [10, 10, 5]
    assert [c[0]["id"] for c in writer.calls] == [0, 10, 20]
    assert sleep.call_count == 2
    sleep.assert_called_with(1.5)


def test_batch_writer_without_batching_writes_once():
    writer = RecordingWriter()
    sleep = MagicMock()

    BatchWriter(writer, delay_seconds=5, sleep=sleep).write(CONFIG, _records(7))

    assert len(writer.calls) == 1
    sleep.assert_not_called()


def test_failed_chunk_reports_rows_written_so_far():
    writer = RecordingWriter(fail_on_call=3)
    bw = BatchWriter(writer, batch_size=10, sleep=lambda _: None)

    with pytest.raises(BatchWriteError) as exc_info:
        bw.write(CONFIG, _records(25))

    assert exc_info.value.rows_written == 20
    assert isinstance(exc_info.value.__cause__, RuntimeError)
    assert bw.rows_written == 20


def test_cancellation_is_observed_between_chunks():
    writer = RecordingWriter()
    token = CancellationToken()

    def sleep(_):
        token.cancel()

    bw = BatchWriter(writer, batch_size=10, delay_seconds=1, sleep=sleep, cancel_token=token)

    with pytest.raises(RunCancelledError) as exc_info:
        bw.write(CONFIG, _records(25))

    assert len(writer.calls) == 1
    assert exc_info.value.rows_written == 10
    assert exc_info.value.stage == "DestinationWrite"
