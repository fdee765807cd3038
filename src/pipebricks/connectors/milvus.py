from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import httpx

from pipebricks.connectors.base import BaseDestinationWriter, BaseSourceReader, int_parameter
from pipebricks.connectors.registry import (
    register_connection_tester,
    register_destination_writer,
    register_source_reader,
)
from pipebricks.connectors.watermark import parse_number
from pipebricks.core.contracts import Record
from pipebricks.core.exceptions import ConnectorError
from pipebricks.models.pipeline import DataSourceConfig

DEFAULT_PORT = 19530
DEFAULT_LIMIT = 100
DEFAULT_TIMEOUT_SECONDS = 30.0


@dataclass(frozen=True)
class MilvusConnection:
    host: str
    port: int = DEFAULT_PORT
    collection: Optional[str] = None
    user: Optional[str] = None
    password: Optional[str] = None
    secure: bool = False

    @property
    def base_url(self) -> str:
        scheme = "https" if self.secure else "http"
        return f"{scheme}://{self.host}:{self.port}"

    @property
    def auth(self) -> Optional[httpx.BasicAuth]:
        if not self.user:
            return None
        return httpx.BasicAuth(self.user, self.password or "")

    @classmethod
    def parse(cls, connection_string: str) -> "MilvusConnection":
        """Parse the JSON connection bundle ``{host, port, collection, user, password}``."""
        try:
            raw = json.loads(connection_string)
        except json.JSONDecodeError as exc:
            raise ConnectorError("milvus", "connection string must be a JSON object") from exc
        if not isinstance(raw, dict) or not raw.get("host"):
            raise ConnectorError("milvus", "connection string requires a host")
        try:
            port = int(raw.get("port") or DEFAULT_PORT)
        except (TypeError, ValueError) as exc:
            raise ConnectorError("milvus", f"invalid port {raw.get('port')!r}") from exc
        return cls(
            host=str(raw["host"]),
            port=port,
            collection=raw.get("collection"),
            user=raw.get("user"),
            password=raw.get("password"),
            secure=bool(raw.get("secure", False)),
        )


def _collection(conn: MilvusConnection, config: DataSourceConfig) -> str:
    name = config.parameters.get("collection") or conn.collection
    if not name:
        raise ConnectorError("milvus", "collection is required")
    return name


def watermark_filter(field: str, value: str) -> str:
    if parse_number(value) is not None:
        return f"{field} > {value}"
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'{field} > "{escaped}"'


class _MilvusMixin:
    connector_type = "milvus"

    def __init__(self, client: Optional[httpx.Client] = None):
        super().__init__()  # type: ignore[call-arg]
        self._client = client

    def _post(self, conn: MilvusConnection, path: str, body: Dict[str, Any]) -> Any:
        client = self._client or httpx.Client(timeout=DEFAULT_TIMEOUT_SECONDS)
        try:
            resp = client.post(f"{conn.base_url}{path}", json=body, auth=conn.auth)
            resp.raise_for_status()
            payload = resp.json()
        except httpx.HTTPError as exc:
            raise ConnectorError(self.connector_type, f"POST {path} failed") from exc
        except ValueError as exc:
            raise ConnectorError(self.connector_type, f"POST {path} did not return JSON") from exc
        finally:
            if self._client is None:
                client.close()
        if isinstance(payload, dict) and payload.get("code", 0) not in (0, 200):
            raise ConnectorError(self.connector_type, f"{path}: {payload.get('message') or payload.get('code')}")
        return payload.get("data") if isinstance(payload, dict) else payload


@register_source_reader("milvus")
class MilvusSourceReader(_MilvusMixin, BaseSourceReader):
    """Queries entities through the Milvus REST v2 API."""

    supports_watermark = True

    def read(
        self,
        config: DataSourceConfig,
        watermark_field: Optional[str] = None,
        watermark_value: Optional[str] = None,
    ) -> List[Record]:
        return self._query(config, watermark_field, watermark_value, limit=None)

    def _query(
        self,
        config: DataSourceConfig,
        watermark_field: Optional[str],
        watermark_value: Optional[str],
        *,
        limit: Optional[int],
    ) -> List[Record]:
        conn = MilvusConnection.parse(config.connection_string)
        expr = config.parameters.get("filter") or "id >= 0"
        if watermark_field and watermark_value is not None:
            expr = watermark_filter(watermark_field, watermark_value)
        if limit is None:
            limit = int_parameter(config, "limit", DEFAULT_LIMIT)
        body = {
            "collectionName": _collection(conn, config),
            "filter": expr,
            "limit": limit,
            "outputFields": ["*"],
        }
        data = self._post(conn, "/v2/vectordb/entities/query", body)
        return [dict(item) for item in (data or []) if isinstance(item, dict)]

    def discover_schema(self, config: DataSourceConfig) -> List[str]:
        conn = MilvusConnection.parse(config.connection_string)
        data = self._post(conn, "/v2/vectordb/collections/describe", {"collectionName": _collection(conn, config)})
        fields = (data or {}).get("fields") or []
        return [f["name"] for f in fields if isinstance(f, dict) and f.get("name")]

    def dry_run_preview(self, config: DataSourceConfig, sample_size: int = 10) -> List[Record]:
        return self._query(config, None, None, limit=max(1, sample_size))[:sample_size]


@register_destination_writer("milvus")
class MilvusDestinationWriter(_MilvusMixin, BaseDestinationWriter):
    """Inserts entities through the Milvus REST v2 API, one request per chunk."""

    def write(self, config: DataSourceConfig, records: Sequence[Record]) -> int:
        if not records:
            return 0
        conn = MilvusConnection.parse(config.connection_string)
        body = {"collectionName": _collection(conn, config), "data": list(records)}
        data = self._post(conn, "/v2/vectordb/entities/insert", body)
        if isinstance(data, dict) and "insertCount" in data:
            return int(data["insertCount"])
        return len(records)


@register_connection_tester("milvus")
def check_milvus_connection(connection_string: str) -> None:
    conn = MilvusConnection.parse(connection_string)
    with httpx.Client(timeout=DEFAULT_TIMEOUT_SECONDS) as client:
        client.get(f"{conn.base_url}/healthz", auth=conn.auth).raise_for_status()
