from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
from bson import ObjectId
from pymongo.collection import Collection
from pymongo.errors import ServerSelectionTimeoutError

from pipebricks.bootstrap import load_builtin_connectors
from pipebricks.connectors.mongodb import (
    MongoDestinationWriter,
    MongoSourceReader,
    document_to_record,
    watermark_query,
)
from pipebricks.connectors.registry import ConnectorRegistry, resolve_source_reader
from pipebricks.core.exceptions import ConnectorError
from pipebricks.models.pipeline import DataSourceConfig

OID = ObjectId("65a1f0c2e4b0a1b2c3d4e5f6")


def setup_function() -> None:
    load_builtin_connectors(reload=True)


def _cfg(**params):
    return DataSourceConfig(
        type="mongodb",
        connection_string="mongodb://localhost:27017",
        parameters={"database": "crm", "collection": "contacts", **params},
    )


def test_mongodb_is_registered_for_both_roles():
    assert "mongodb" in ConnectorRegistry.tokens("source")
    assert "mongodb" in ConnectorRegistry.tokens("destination")
    assert isinstance(resolve_source_reader("MongoDB"), MongoSourceReader)


def test_document_to_record_stringifies_object_ids():
    doc = {"_id": OID, "owner": {"ref": OID}, "tags": [OID, "x"], "n": 1}

    assert document_to_record(doc) == {
        "_id": "65a1f0c2e4b0a1b2c3d4e5f6",
        "owner": {"ref": "65a1f0c2e4b0a1b2c3d4e5f6"},
        "tags": ["65a1f0c2e4b0a1b2c3d4e5f6", "x"],
        "n": 1,
    }


def test_watermark_query_types_the_value():
    assert watermark_query("version", "10") == {"version": {"$gt": 10}}
    assert watermark_query("score", "2.5") == {"score": {"$gt": 2.5}}
    assert watermark_query("updated", "2024-01-01T00:00:00Z") == {
        "updated": {"$gt": datetime(2024, 1, 1, tzinfo=timezone.utc)}
    }
    assert watermark_query("code", "abc") == {"code": {"$gt": "abc"}}


def test_reader_finds_all_documents_without_watermark():
    coll = MagicMock(spec=Collection)
    coll.find.return_value = [{"_id": OID, "name": "Ada"}]

    records = MongoSourceReader(collection=coll).read(_cfg())

    assert records == [{"_id": "65a1f0c2e4b0a1b2c3d4e5f6", "name": "Ada"}]
    coll.find.assert_called_once_with({}, limit=0)


def test_reader_filters_on_watermark_with_gt():
    coll = MagicMock(spec=Collection)
    coll.find.return_value = []

    MongoSourceReader(collection=coll).read(_cfg(limit="50"), "version", "7")

    coll.find.assert_called_once_with({"version": {"$gt": 7}}, limit=50)


def test_reader_schema_and_preview():
    coll = MagicMock(spec=Collection)
    coll.find_one.return_value = {"_id": OID, "name": "Ada", "email": "a@x"}
    coll.find.return_value = [{"name": "Ada"}]
    reader = MongoSourceReader(collection=coll)

    assert reader.discover_schema(_cfg()) == ["_id", "name", "email"]
    assert reader.dry_run_preview(_cfg(), sample_size=3) == [{"name": "Ada"}]
    coll.find.assert_called_once_with({}, limit=3)


def test_reader_wraps_driver_errors():
    coll = MagicMock(spec=Collection)
    coll.find.side_effect = ServerSelectionTimeoutError("no servers")

    with pytest.raises(ConnectorError, match=r"\[mongodb\] read from contacts failed"):
        MongoSourceReader(collection=coll).read(_cfg())


def test_writer_inserts_copies_of_each_chunk():
    coll = MagicMock(spec=Collection)
    coll.insert_many.return_value = MagicMock(inserted_ids=[1, 2])
    records = [{"name": "Ada"}, {"name": "Grace"}]

    written = MongoDestinationWriter(collection=coll).write(_cfg(), records)

    assert written == 2
    docs = coll.insert_many.call_args.args[0]
    assert docs == records
    assert docs[0] is not records[0]
    assert MongoDestinationWriter(collection=coll).write(_cfg(), []) == 0
    assert coll.insert_many.call_count == 1


def test_writer_wraps_driver_errors_and_accepts_any_schema():
    coll = MagicMock(spec=Collection)
    coll.insert_many.side_effect = ServerSelectionTimeoutError("no servers")
    writer = MongoDestinationWriter(collection=coll)

    with pytest.raises(ConnectorError, match="insert into contacts failed"):
        writer.write(_cfg(), [{"name": "Ada"}])
    assert writer.validate_schema(_cfg(), ["anything"]) is True
