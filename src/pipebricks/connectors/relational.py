from __future__ import annotations

import re
from datetime import date, datetime
from typing import Any, Callable, List, Optional, Sequence, Tuple

from sqlalchemy import MetaData, Table, create_engine, insert, inspect, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import NoSuchTableError, SQLAlchemyError

from pipebricks.connectors.base import BaseDestinationWriter, BaseSourceReader, fields_of, int_parameter
from pipebricks.connectors.registry import (
    register_connection_tester,
    register_destination_writer,
    register_source_reader,
)
from pipebricks.connectors.watermark import parse_datetime
from pipebricks.core.contracts import Record
from pipebricks.core.exceptions import ConnectorError
from pipebricks.models.pipeline import DataSourceConfig

RELATIONAL_TOKENS = ("sql", "sqlite", "postgresql", "mysql", "sqlserver", "oracle")
DEFAULT_TABLE = "data"
SAFE_IDENTIFIER = re.compile(r"^[\w.]+$")

EngineFactory = Callable[[str], Engine]


def _split_table(config: DataSourceConfig) -> Tuple[Optional[str], str]:
    name = (config.parameters.get("table") or DEFAULT_TABLE).strip()
    if not SAFE_IDENTIFIER.match(name):
        raise ConnectorError(config.type, f"unsafe table identifier {name!r}")
    if "." in name:
        schema, table = name.rsplit(".", 1)
        return schema, table
    return None, name


def _coerce_for_column(column: Any, value: str) -> Any:
    """Convert a stored watermark string to the column's Python type where known."""
    try:
        python_type = column.type.python_type
    except NotImplementedError:
        return value
    try:
        if python_type is bool:
            return value.strip().lower() in ("1", "true", "yes")
        if python_type is int:
            return int(float(value))
        if python_type is float:
            return float(value)
        if python_type in (datetime, date):
            parsed = parse_datetime(value)
            if parsed is None:
                return value
            return parsed.date() if python_type is date else parsed.replace(tzinfo=None)
    except ValueError:
        return value
    return value


class _RelationalMixin:
    connector_type = "sql"

    def __init__(self, engine_factory: Optional[EngineFactory] = None):
        super().__init__()  # type: ignore[call-arg]
        self._engine_factory: EngineFactory = engine_factory or create_engine

    def _engine(self, config: DataSourceConfig) -> Engine:
        if not config.connection_string:
            raise ConnectorError(config.type, "connection string must be a SQLAlchemy URL")
        try:
            return self._engine_factory(config.connection_string)
        except (SQLAlchemyError, ValueError) as exc:
            raise ConnectorError(config.type, "invalid database URL") from exc

    def _reflect(self, engine: Engine, config: DataSourceConfig) -> Table:
        schema, name = _split_table(config)
        try:
            return Table(name, MetaData(), autoload_with=engine, schema=schema)
        except NoSuchTableError as exc:
            raise ConnectorError(config.type, f"table {name!r} does not exist") from exc

    def _columns(self, engine: Engine, config: DataSourceConfig) -> List[str]:
        schema, name = _split_table(config)
        return [c["name"] for c in inspect(engine).get_columns(name, schema=schema)]


@register_source_reader(*RELATIONAL_TOKENS)
class RelationalSourceReader(_RelationalMixin, BaseSourceReader):
    """Reads a whole table, or the rows past the watermark (``WHERE field > :value``)."""

    supports_watermark = True

    def read(
        self,
        config: DataSourceConfig,
        watermark_field: Optional[str] = None,
        watermark_value: Optional[str] = None,
    ) -> List[Record]:
        engine = self._engine(config)
        try:
            table = self._reflect(engine, config)
            stmt = select(table)
            if watermark_field and watermark_value is not None:
                if not SAFE_IDENTIFIER.match(watermark_field) or watermark_field not in table.c:
                    raise ConnectorError(config.type, f"invalid watermark column {watermark_field!r}")
                column = table.c[watermark_field]
                stmt = stmt.where(column > _coerce_for_column(column, watermark_value))
            limit = int_parameter(config, "limit")
            if limit:
                stmt = stmt.limit(limit)
            with engine.connect() as conn:
                return [dict(row._mapping) for row in conn.execute(stmt)]
        except SQLAlchemyError as exc:
            raise ConnectorError(config.type, f"read from {table_name(config)} failed") from exc
        finally:
            engine.dispose()

    def discover_schema(self, config: DataSourceConfig) -> List[str]:
        engine = self._engine(config)
        try:
            return self._columns(engine, config)
        except SQLAlchemyError as exc:
            raise ConnectorError(config.type, "schema discovery failed") from exc
        finally:
            engine.dispose()

    def dry_run_preview(self, config: DataSourceConfig, sample_size: int = 10) -> List[Record]:
        engine = self._engine(config)
        try:
            table = self._reflect(engine, config)
            with engine.connect() as conn:
                rows = conn.execute(select(table).limit(max(0, sample_size)))
                return [dict(row._mapping) for row in rows]
        except SQLAlchemyError as exc:
            raise ConnectorError(config.type, "preview failed") from exc
        finally:
            engine.dispose()


@register_destination_writer(*RELATIONAL_TOKENS)
class RelationalDestinationWriter(_RelationalMixin, BaseDestinationWriter):
    """Parameterized inserts in a single transaction per chunk; unknown fields are dropped."""

    def write(self, config: DataSourceConfig, records: Sequence[Record]) -> int:
        if not records:
            return 0
        engine = self._engine(config)
        try:
            table = self._reflect(engine, config)
            known = set(table.c.keys())
            columns = [c for c in fields_of(records) if c in known]
            rows = [{c: r.get(c) for c in columns} for r in records]
            with engine.begin() as conn:
                conn.execute(insert(table), rows)
            return len(rows)
        except SQLAlchemyError as exc:
            raise ConnectorError(config.type, f"insert into {table_name(config)} failed") from exc
        finally:
            engine.dispose()

    def validate_schema(self, config: DataSourceConfig, fields: Sequence[str]) -> bool:
        engine = self._engine(config)
        try:
            columns = set(self._columns(engine, config))
        except SQLAlchemyError as exc:
            raise ConnectorError(config.type, "schema validation failed") from exc
        finally:
            engine.dispose()
        missing = [f for f in fields if f not in columns]
        if missing:
            self.log_warn(f"Destination table is missing columns: {missing}")
        return not missing


def table_name(config: DataSourceConfig) -> str:
    return config.parameters.get("table") or DEFAULT_TABLE


@register_connection_tester(*RELATIONAL_TOKENS)
def check_relational_connection(connection_string: str) -> None:
    engine = create_engine(connection_string)
    try:
        with engine.connect():
            pass
    finally:
        engine.dispose()
