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
from pipebricks.core.contracts import Record
from pipebricks.core.exceptions import ConnectorError
from pipebricks.models.pipeline import DataSourceConfig

CONTROL_PLANE_URL = "https://api.pinecone.io"
API_VERSION = "2024-07"
DEFAULT_TOP_K = 100
DEFAULT_DIMENSION = 1536
DEFAULT_TIMEOUT_SECONDS = 30.0


@dataclass(frozen=True)
class PineconeConnection:
    api_key: str
    index_name: str
    host: Optional[str] = None

    @property
    def headers(self) -> Dict[str, str]:
        return {"Api-Key": self.api_key, "X-Pinecone-API-Version": API_VERSION}

    @classmethod
    def parse(cls, connection_string: str) -> "PineconeConnection":
        """Parse the JSON bundle ``{apiKey, indexName, host}``; ``host`` is looked up when omitted."""
        try:
            raw = json.loads(connection_string)
        except json.JSONDecodeError as exc:
            raise ConnectorError("pinecone", "connection string must be a JSON object") from exc
        if not isinstance(raw, dict) or not raw.get("apiKey") or not raw.get("indexName"):
            raise ConnectorError("pinecone", "connection string requires apiKey and indexName")
        host = raw.get("host")
        if host and not str(host).startswith(("http://", "https://")):
            host = f"https://{host}"
        return cls(api_key=str(raw["apiKey"]), index_name=str(raw["indexName"]), host=host or None)


def vector_values(value: Any) -> List[float]:
    """Embedding from a list of numbers or a comma separated string."""
    if value is None:
        return []
    items = value.split(",") if isinstance(value, str) else value
    try:
        return [float(v) for v in items if not (isinstance(v, str) and not v.strip())]
    except (TypeError, ValueError) as exc:
        raise ConnectorError("pinecone", f"values must be numbers, got {value!r}") from exc


def _metadata_value(value: Any) -> Any:
    if isinstance(value, (str, bool, int, float)):
        return value
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value]
    return str(value)


def record_to_vector(record: Record) -> Dict[str, Any]:
    """``id`` and ``values`` become the vector; every other non-null field becomes metadata."""
    if record.get("id") in (None, ""):
        raise ConnectorError("pinecone", "every record needs an id")
    vector: Dict[str, Any] = {"id": str(record["id"]), "values": vector_values(record.get("values"))}
    metadata = {k: _metadata_value(v) for k, v in record.items() if k not in ("id", "values") and v is not None}
    if metadata:
        vector["metadata"] = metadata
    return vector


def match_to_record(match: Dict[str, Any]) -> Record:
    record: Record = {"id": match.get("id"), "score": match.get("score")}
    record.update(match.get("metadata") or {})
    return record


class _PineconeMixin:
    connector_type = "pinecone"

    def __init__(self, client: Optional[httpx.Client] = None):
        super().__init__()  # type: ignore[call-arg]
        self._client = client

    def _call(self, conn: PineconeConnection, url: str, body: Optional[Dict[str, Any]] = None) -> Any:
        """POST ``body`` to ``url``, or GET it when there is no body."""
        method = "GET" if body is None else "POST"
        client = self._client or httpx.Client(timeout=DEFAULT_TIMEOUT_SECONDS)
        try:
            if body is None:
                resp = client.get(url, headers=conn.headers)
            else:
                resp = client.post(url, json=body, headers=conn.headers)
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPError as exc:
            raise ConnectorError(self.connector_type, f"{method} {url} failed") from exc
        except ValueError as exc:
            raise ConnectorError(self.connector_type, f"{method} {url} did not return JSON") from exc
        finally:
            if self._client is None:
                client.close()

    def _host(self, conn: PineconeConnection) -> str:
        if conn.host:
            return conn.host.rstrip("/")
        described = self._call(conn, f"{CONTROL_PLANE_URL}/indexes/{conn.index_name}")
        host = (described or {}).get("host")
        if not host:
            raise ConnectorError(self.connector_type, f"index {conn.index_name!r} has no host")
        return f"https://{host}"


@register_source_reader("pinecone")
class PineconeSourceReader(_PineconeMixin, BaseSourceReader):
    """Lists vectors with a zero-vector query of ``topK`` matches (``namespace`` optional)."""

    def read(
        self,
        config: DataSourceConfig,
        watermark_field: Optional[str] = None,
        watermark_value: Optional[str] = None,
    ) -> List[Record]:
        return self._query(config, int_parameter(config, "topK", DEFAULT_TOP_K) or DEFAULT_TOP_K)

    def _query(self, config: DataSourceConfig, top_k: int) -> List[Record]:
        conn = PineconeConnection.parse(config.connection_string)
        host = self._host(conn)
        stats = self._call(conn, f"{host}/describe_index_stats", {}) or {}
        dimension = int(stats.get("dimension") or DEFAULT_DIMENSION)
        body: Dict[str, Any] = {"vector": [0.0] * dimension, "topK": top_k, "includeMetadata": True}
        namespace = config.parameters.get("namespace")
        if namespace:
            body["namespace"] = namespace
        data = self._call(conn, f"{host}/query", body) or {}
        return [match_to_record(m) for m in data.get("matches") or [] if isinstance(m, dict)]

    def discover_schema(self, config: DataSourceConfig) -> List[str]:
        records = self._query(config, 1)
        return list(records[0]) if records else []

    def dry_run_preview(self, config: DataSourceConfig, sample_size: int = 10) -> List[Record]:
        if sample_size <= 0:
            return []
        return self._query(config, sample_size)[:sample_size]


@register_destination_writer("pinecone")
class PineconeDestinationWriter(_PineconeMixin, BaseDestinationWriter):
    """Upserts each chunk; records need ``id`` and ``values``, the rest is stored as metadata."""

    def write(self, config: DataSourceConfig, records: Sequence[Record]) -> int:
        if not records:
            return 0
        conn = PineconeConnection.parse(config.connection_string)
        body: Dict[str, Any] = {"vectors": [record_to_vector(r) for r in records]}
        namespace = config.parameters.get("namespace")
        if namespace:
            body["namespace"] = namespace
        data = self._call(conn, f"{self._host(conn)}/vectors/upsert", body) or {}
        return int(data.get("upsertedCount", len(records)))

    def validate_schema(self, config: DataSourceConfig, fields: Sequence[str]) -> bool:
        names = {f.lower() for f in fields}
        return "id" in names and "values" in names


@register_connection_tester("pinecone")
def check_pinecone_connection(connection_string: str) -> None:
    conn = PineconeConnection.parse(connection_string)
    with httpx.Client(timeout=DEFAULT_TIMEOUT_SECONDS) as client:
        client.get(f"{CONTROL_PLANE_URL}/indexes/{conn.index_name}", headers=conn.headers).raise_for_status()
