from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from bson import ObjectId
from pymongo import MongoClient
from pymongo.collection import Collection
from pymongo.errors import PyMongoError

from pipebricks.connectors.base import BaseDestinationWriter, BaseSourceReader, int_parameter
from pipebricks.connectors.registry import (
    register_connection_tester,
    register_destination_writer,
    register_source_reader,
)
from pipebricks.connectors.watermark import parse_datetime, parse_number
from pipebricks.core.contracts import Record
from pipebricks.core.exceptions import ConnectorError
from pipebricks.models.pipeline import DataSourceConfig

DEFAULT_DATABASE = "default"
DEFAULT_COLLECTION = "data"
SERVER_SELECTION_TIMEOUT_MS = 5000


def _plain(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_plain(v) for v in value]
    return value


def document_to_record(doc: Dict[str, Any]) -> Record:
    """BSON document to a plain record; ObjectIds become their hex string."""
    return {k: _plain(v) for k, v in doc.items()}


def watermark_query(field: str, value: str) -> Dict[str, Any]:
    """``{field: {"$gt": value}}`` with the value typed as a number, then a datetime, then text."""
    number = parse_number(value)
    typed: Any
    if number is not None:
        typed = int(number) if number.is_integer() else number
    else:
        typed = parse_datetime(value) or value
    return {field: {"$gt": typed}}


class _MongoMixin:
    connector_type = "mongodb"

    def __init__(self, collection: Optional[Collection] = None):
        super().__init__()  # type: ignore[call-arg]
        self._collection = collection

    @staticmethod
    def names(config: DataSourceConfig) -> Tuple[str, str]:
        database = config.parameters.get("database") or DEFAULT_DATABASE
        collection = config.parameters.get("collection") or DEFAULT_COLLECTION
        return database, collection

    @contextmanager
    def collection(self, config: DataSourceConfig) -> Iterator[Collection]:
        if self._collection is not None:
            yield self._collection
            return
        database, collection = self.names(config)
        client: MongoClient = MongoClient(
            config.connection_string, serverSelectionTimeoutMS=SERVER_SELECTION_TIMEOUT_MS
        )
        try:
            yield client[database][collection]
        finally:
            client.close()


@register_source_reader("mongodb", "mongo")
class MongoSourceReader(_MongoMixin, BaseSourceReader):
    """Reads documents from a MongoDB collection (``database`` and ``collection`` parameters)."""

    supports_watermark = True

    def read(
        self,
        config: DataSourceConfig,
        watermark_field: Optional[str] = None,
        watermark_value: Optional[str] = None,
    ) -> List[Record]:
        query: Dict[str, Any] = {}
        if watermark_field and watermark_value is not None:
            query = watermark_query(watermark_field, watermark_value)
        return self._find(config, query, int_parameter(config, "limit", 0) or 0)

    def discover_schema(self, config: DataSourceConfig) -> List[str]:
        try:
            with self.collection(config) as coll:
                first = coll.find_one({})
        except PyMongoError as exc:
            raise ConnectorError(self.connector_type, "schema discovery failed") from exc
        return list(first) if first else []

    def dry_run_preview(self, config: DataSourceConfig, sample_size: int = 10) -> List[Record]:
        if sample_size <= 0:
            return []
        return self._find(config, {}, sample_size)

    def _find(self, config: DataSourceConfig, query: Dict[str, Any], limit: int) -> List[Record]:
        _, name = self.names(config)
        self.log_info(f"Reading from MongoDB collection '{name}'")
        try:
            with self.collection(config) as coll:
                return [document_to_record(doc) for doc in coll.find(query, limit=limit)]
        except PyMongoError as exc:
            raise ConnectorError(self.connector_type, f"read from {name} failed") from exc


@register_destination_writer("mongodb", "mongo")
class MongoDestinationWriter(_MongoMixin, BaseDestinationWriter):
    """Inserts each chunk with one ``insert_many``; MongoDB is schemaless so any fields validate."""

    def write(self, config: DataSourceConfig, records: Sequence[Record]) -> int:
        if not records:
            return 0
        _, name = self.names(config)
        # insert_many adds _id to the documents it is given
        docs = [dict(r) for r in records]
        try:
            with self.collection(config) as coll:
                result = coll.insert_many(docs, ordered=True)
        except PyMongoError as exc:
            raise ConnectorError(self.connector_type, f"insert into {name} failed: {exc}") from exc
        self.log_info(f"Inserted {len(result.inserted_ids)} documents into '{name}'")
        return len(result.inserted_ids)


@register_connection_tester("mongodb", "mongo")
def check_mongodb_connection(connection_string: str) -> None:
    client: MongoClient = MongoClient(connection_string, serverSelectionTimeoutMS=SERVER_SELECTION_TIMEOUT_MS)
    try:
        client.admin.command("ping")
    finally:
        client.close()
