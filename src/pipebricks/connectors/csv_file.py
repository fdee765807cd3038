from __future__ import annotations

import csv
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from pipebricks.connectors.base import BaseDestinationWriter, BaseSourceReader, fields_of
from pipebricks.connectors.registry import (
    register_connection_tester,
    register_destination_writer,
    register_source_reader,
)
from pipebricks.connectors.watermark import filter_after
from pipebricks.core.contracts import Record
from pipebricks.core.exceptions import ConnectorError
from pipebricks.models.pipeline import DataSourceConfig


def _csv_options(config: DataSourceConfig) -> Tuple[str, str]:
    delimiter = config.parameters.get("delimiter") or ","
    encoding = config.parameters.get("encoding") or "utf-8"
    return delimiter, encoding


def _path(config: DataSourceConfig) -> Path:
    if not config.connection_string:
        raise ConnectorError("csv", "connection string must be a file path")
    return Path(config.connection_string)


@register_source_reader("csv")
class CsvSourceReader(BaseSourceReader):
    """Reads a delimited text file with a header row; every value is a string."""

    connector_type = "csv"
    supports_watermark = True

    def read(
        self,
        config: DataSourceConfig,
        watermark_field: Optional[str] = None,
        watermark_value: Optional[str] = None,
    ) -> List[Record]:
        path = _path(config)
        delimiter, encoding = _csv_options(config)
        try:
            with open(path, "r", encoding=encoding, newline="") as f:
                records = [dict(row) for row in csv.DictReader(f, delimiter=delimiter)]
        except (OSError, UnicodeDecodeError, csv.Error) as exc:
            raise ConnectorError(self.connector_type, f"failed to read {path}") from exc

        if watermark_field and watermark_value is not None:
            filtered = filter_after(records, watermark_field, watermark_value)
            self.log_info(f"Watermark {watermark_field} > {watermark_value!r}: {len(filtered)}/{len(records)} rows")
            return filtered
        return records

    def discover_schema(self, config: DataSourceConfig) -> List[str]:
        path = _path(config)
        delimiter, encoding = _csv_options(config)
        try:
            with open(path, "r", encoding=encoding, newline="") as f:
                header = next(csv.reader(f, delimiter=delimiter), [])
        except (OSError, UnicodeDecodeError, csv.Error) as exc:
            raise ConnectorError(self.connector_type, f"failed to read header of {path}") from exc
        return [h for h in header if h]


@register_destination_writer("csv")
class CsvDestinationWriter(BaseDestinationWriter):
    """Appends records to a CSV file, writing a header when the file is new or empty."""

    connector_type = "csv"

    def _existing_header(self, path: Path, delimiter: str, encoding: str) -> List[str]:
        if not path.exists() or path.stat().st_size == 0:
            return []
        with open(path, "r", encoding=encoding, newline="") as f:
            return next(csv.reader(f, delimiter=delimiter), [])

    def write(self, config: DataSourceConfig, records: Sequence[Record]) -> int:
        if not records:
            return 0
        path = _path(config)
        delimiter, encoding = _csv_options(config)
        try:
            header = self._existing_header(path, delimiter, encoding)
            new_file = not header
            fieldnames = header or fields_of(records)
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "a", encoding=encoding, newline="") as f:
                writer = csv.DictWriter(
                    f, fieldnames=fieldnames, delimiter=delimiter, restval="", extrasaction="ignore"
                )
                if new_file:
                    writer.writeheader()
                writer.writerows(records)
        except (OSError, csv.Error) as exc:
            raise ConnectorError(self.connector_type, f"failed to write {path}") from exc
        return len(records)

    def validate_schema(self, config: DataSourceConfig, fields: Sequence[str]) -> bool:
        delimiter, encoding = _csv_options(config)
        header = self._existing_header(_path(config), delimiter, encoding)
        if not header:
            return True
        return all(f in header for f in fields)


@register_connection_tester("csv")
def check_csv_connection(connection_string: str) -> None:
    path = Path(connection_string)
    if not path.is_file():
        raise ConnectorError("csv", f"file not found: {path}")
    with open(path, "rb"):
        pass
