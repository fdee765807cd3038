from __future__ import annotations

from typing import Any, List, Optional

import httpx

from pipebricks.connectors.base import BaseSourceReader, fields_of
from pipebricks.connectors.http_auth import build_request_headers
from pipebricks.connectors.json_file import records_from_json
from pipebricks.connectors.registry import register_connection_tester, register_source_reader
from pipebricks.core.contracts import Record
from pipebricks.core.exceptions import ConnectorError
from pipebricks.models.pipeline import DataSourceConfig

DEFAULT_TIMEOUT_SECONDS = 30.0


def _timeout(config: DataSourceConfig) -> float:
    try:
        return float(config.parameters.get("timeoutSeconds") or DEFAULT_TIMEOUT_SECONDS)
    except ValueError:
        return DEFAULT_TIMEOUT_SECONDS


def _dig(data: Any, path: Optional[str]) -> Any:
    """Follow a dotted ``recordsPath`` into an envelope response."""
    if not path:
        return data
    for part in path.split("."):
        if not isinstance(data, dict) or part not in data:
            raise ConnectorError("rest", f"recordsPath {path!r} not found in response")
        data = data[part]
    return data


@register_source_reader("rest", "api")
class RestSourceReader(BaseSourceReader):
    """HTTP GET against the connection string URL.

    Watermarks are not supported; the full collection is returned on every read.
    """

    connector_type = "rest"
    supports_watermark = False

    def __init__(self, client: Optional[httpx.Client] = None):
        super().__init__()
        self._client = client

    def _get_json(self, config: DataSourceConfig) -> Any:
        url = config.connection_string
        headers = build_request_headers(config.parameters)
        client = self._client or httpx.Client(timeout=_timeout(config))
        try:
            resp = client.get(url, headers=headers)
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPError as exc:
            raise ConnectorError(self.connector_type, f"GET {url} failed") from exc
        except ValueError as exc:
            raise ConnectorError(self.connector_type, f"GET {url} did not return JSON") from exc
        finally:
            if self._client is None:
                client.close()

    def read(
        self,
        config: DataSourceConfig,
        watermark_field: Optional[str] = None,
        watermark_value: Optional[str] = None,
    ) -> List[Record]:
        if watermark_field:
            self.log.debug(f"rest reader ignores watermark on {watermark_field!r}")
        data = _dig(self._get_json(config), config.parameters.get("recordsPath"))
        if not isinstance(data, list):
            raise ConnectorError(self.connector_type, "response root must be a JSON array (set recordsPath for envelopes)")
        return records_from_json(data)

    def discover_schema(self, config: DataSourceConfig) -> List[str]:
        return fields_of(self.read(config))


@register_connection_tester("rest", "api")
def check_rest_connection(connection_string: str) -> None:
    with httpx.Client(timeout=DEFAULT_TIMEOUT_SECONDS) as client:
        client.get(connection_string).raise_for_status()
