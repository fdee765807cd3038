from pipebricks.core.exceptions import (
    BatchWriteError,
    ConnectorError,
    PipelineExecutionError,
    RunCancelledError,
    UnknownConnectorType,
    flatten_error_chain,
)


def _chain():
    try:
        try:
            try:
                raise OSError("no route to host")
            except OSError as exc:
                raise ConnectorError("postgresql", "could not connect") from exc
        except ConnectorError as exc:
            raise PipelineExecutionError("SourceRead", "ConnectorError") from exc
    except PipelineExecutionError as exc:
        return exc


def test_flatten_follows_causes_outermost_first():
    exc = _chain()

    assert exc.detailed_message == (
        "SourceRead failed: ConnectorError --> [postgresql] could not connect --> no route to host"
    )


def test_flatten_drops_empty_and_repeated_messages():
    try:
        try:
            raise ValueError("same")
        except ValueError:
            raise ValueError("same")
    except ValueError as outer:
        assert flatten_error_chain(outer) == "same"

    assert flatten_error_chain(RuntimeError()) == "RuntimeError"


def test_exception_messages():
    assert str(UnknownConnectorType("ftp", "source")) == "No source connector registered for type='ftp'"
    assert str(BatchWriteError("sql", "chunk 2 failed", rows_written=10)) == "[sql] chunk 2 failed"

    cancelled = RunCancelledError("Transform", rows_written=4)
    assert isinstance(cancelled, PipelineExecutionError)
    assert str(cancelled) == "Transform failed: run cancelled"
    assert cancelled.rows_written == 4
