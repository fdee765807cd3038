from __future__ import annotations

import json
from pathlib import Path
from typing import Any, List, Optional

from pipebricks.connectors.base import BaseSourceReader, fields_of
from pipebricks.connectors.registry import register_connection_tester, register_source_reader
from pipebricks.connectors.watermark import filter_after
from pipebricks.core.contracts import Record
from pipebricks.core.exceptions import ConnectorError
from pipebricks.models.pipeline import DataSourceConfig


def records_from_json(data: Any) -> List[Record]:
    """Normalize a decoded JSON document into records.

    An array yields one record per item, a single object yields one record,
    and non-object items are wrapped as ``{"value": item}``.
    """
    items = data if isinstance(data, list) else [data]
    return [item if isinstance(item, dict) else {"value": item} for item in items]


def _load(config: DataSourceConfig) -> Any:
    mode = (config.parameters.get("jsonMode") or "file").strip().lower()
    if mode == "inline":
        text = config.connection_string
    elif mode == "file":
        text = Path(config.connection_string).read_text(encoding=config.parameters.get("encoding") or "utf-8")
    else:
        raise ConnectorError("json", f"unsupported jsonMode {mode!r}; expected 'inline' or 'file'")
    return json.loads(text)


@register_source_reader("json")
class JsonSourceReader(BaseSourceReader):
    """JSON documents from a file or inline in the connection string (``jsonMode``)."""

    connector_type = "json"
    supports_watermark = True

    def read(
        self,
        config: DataSourceConfig,
        watermark_field: Optional[str] = None,
        watermark_value: Optional[str] = None,
    ) -> List[Record]:
        try:
            records = records_from_json(_load(config))
        except (OSError, UnicodeDecodeError, LookupError, json.JSONDecodeError) as exc:
            raise ConnectorError(self.connector_type, "failed to load JSON document") from exc
        if watermark_field and watermark_value is not None:
            return filter_after(records, watermark_field, watermark_value)
        return records

    def discover_schema(self, config: DataSourceConfig) -> List[str]:
        return fields_of(self.read(config))


@register_connection_tester("json")
def check_json_connection(connection_string: str) -> None:
    text = connection_string.strip()
    if text.startswith(("{", "[")):
        json.loads(text)
        return
    if not Path(text).is_file():
        raise ConnectorError("json", f"file not found: {text}")
