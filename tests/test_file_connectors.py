import csv
import json

import pytest

from pipebricks.bootstrap import load_builtin_connectors
from pipebricks.connectors.csv_file import CsvDestinationWriter, CsvSourceReader
from pipebricks.connectors.json_file import JsonSourceReader, records_from_json
from pipebricks.connectors.registry import test_connection
from pipebricks.core.exceptions import ConnectorError
from pipebricks.models.pipeline import DataSourceConfig


def setup_function() -> None:
    load_builtin_connectors(reload=True)


def _write_csv(path, rows, delimiter=","):
    with open(path, "w", encoding="utf-8", newline="") as f:
        writer = csv.writer(f, delimiter=delimiter)
        writer.writerows(rows)


def test_csv_reader_reads_header_rows_as_strings(tmp_path):
    path = tmp_path / "in.csv"
    _write_csv(path, [["id", "name"], ["1", "Ada"], ["2", "Grace"]])

    records = CsvSourceReader().read(DataSourceConfig(type="csv", connection_string=str(path)))

    assert records == [{"id": "1", "name": "Ada"}, {"id": "2", "name": "Grace"}]


def test_csv_reader_honours_delimiter_and_watermark(tmp_path):
    path = tmp_path / "in.csv"
    _write_csv(path, [["id", "updated"], ["1", "5"], ["2", "10"], ["3", ""]], delimiter=";")
    cfg = DataSourceConfig(type="csv", connection_string=str(path), parameters={"delimiter": ";"})

    records = CsvSourceReader().read(cfg, "updated", "5")

    assert [r["id"] for r in records] == ["2"]


def test_csv_reader_discovers_header(tmp_path):
    path = tmp_path / "in.csv"
    _write_csv(path, [["id", "name", "email"]])

    fields = CsvSourceReader().discover_schema(DataSourceConfig(type="csv", connection_string=str(path)))

    assert fields == ["id", "name", "email"]


def test_csv_reader_missing_file_raises_connector_error(tmp_path):
    cfg = DataSourceConfig(type="csv", connection_string=str(tmp_path / "nope.csv"))

    with pytest.raises(ConnectorError) as exc_info:
        CsvSourceReader().read(cfg)
    assert isinstance(exc_info.value.__cause__, OSError)


def test_csv_writer_writes_header_once_and_appends(tmp_path):
    path = tmp_path / "out" / "out.csv"
    cfg = DataSourceConfig(type="csv", connection_string=str(path))
    writer = CsvDestinationWriter()

    assert writer.write(cfg, [{"id": 1, "name": "Ada"}]) == 1
    assert writer.write(cfg, [{"name": "Grace", "id": 2, "ignored": "x"}]) == 1

    lines = path.read_text(encoding="utf-8").splitlines()
    assert lines == ["id,name", "1,Ada", "2,Grace"]


def test_csv_writer_validates_against_existing_header(tmp_path):
    path = tmp_path / "out.csv"
    _write_csv(path, [["id", "name"]])
    cfg = DataSourceConfig(type="csv", connection_string=str(path))

    assert CsvDestinationWriter().validate_schema(cfg, ["id"]) is True
    assert CsvDestinationWriter().validate_schema(cfg, ["id", "email"]) is False


def test_records_from_json_normalizes_shapes():
    assert records_from_json({"a": 1}) == [{"a": 1}]
    assert records_from_json([{"a": 1}, 2]) == [{"a": 1}, {"value": 2}]


def test_json_reader_inline_and_file_modes(tmp_path):
    docs = [{"id": 1, "ts": "2024-01-01T00:00:00Z"}, {"id": 2, "ts": "2024-02-01T00:00:00Z"}]
    path = tmp_path / "in.json"
    path.write_text(json.dumps(docs), encoding="utf-8")

    from_file = JsonSourceReader().read(DataSourceConfig(type="json", connection_string=str(path)))
    inline = JsonSourceReader().read(
        DataSourceConfig(type="json", connection_string=json.dumps(docs), parameters={"jsonMode": "inline"})
    )

    assert from_file == docs
    assert inline == docs


def test_json_reader_filters_by_datetime_watermark():
    docs = [{"id": 1, "ts": "2024-01-01T00:00:00Z"}, {"id": 2, "ts": "2024-02-01T00:00:00Z"}]
    cfg = DataSourceConfig(type="json", connection_string=json.dumps(docs), parameters={"jsonMode": "inline"})

    records = JsonSourceReader().read(cfg, "ts", "2024-01-15T00:00:00+00:00")

    assert [r["id"] for r in records] == [2]
    assert JsonSourceReader().discover_schema(cfg) == ["id", "ts"]


def test_json_reader_bad_document_raises_connector_error():
    cfg = DataSourceConfig(type="json", connection_string="{not json", parameters={"jsonMode": "inline"})

    with pytest.raises(ConnectorError, match=r"\[json\]"):
        JsonSourceReader().read(cfg)


def test_json_reader_undecodable_file_raises_connector_error(tmp_path):
    path = tmp_path / "latin1.json"
    path.write_bytes(b'[{"name": "Jos\xe9"}]')

    with pytest.raises(ConnectorError, match=r"\[json\]"):
        JsonSourceReader().read(DataSourceConfig(type="json", connection_string=str(path)))


def test_file_connection_testers(tmp_path):
    path = tmp_path / "in.csv"
    _write_csv(path, [["id"]])

    assert test_connection("csv", str(path)).success is True
    assert test_connection("csv", str(tmp_path / "missing.csv")).success is False
    assert test_connection("json", '[{"a": 1}]').success is True
