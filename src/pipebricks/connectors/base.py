from __future__ import annotations

from abc import ABC, abstractmethod
from itertools import islice
from typing import Any, Dict, List, Optional, Sequence

from pipebricks.core.contracts import Record
from pipebricks.core.exceptions import ConnectorError
from pipebricks.core.logger import get_logger
from pipebricks.models.pipeline import DataSourceConfig


class _ConnectorBase:
    connector_type: str = "unknown"

    def __init__(self) -> None:
        self.log = get_logger(f"pipebricks.connectors.{self.__class__.__name__}")

    # --- Logging helpers ---
    def log_info(self, msg: str) -> None:
        self.log.info(msg)

    def log_warn(self, msg: str) -> None:
        self.log.warning(msg)

    def log_error(self, msg: str, exc: Optional[BaseException] = None) -> None:
        if exc:
            self.log.error(msg, exc_info=exc)
        else:
            self.log.error(msg)


class BaseSourceReader(_ConnectorBase, ABC):
    """Reads records from a source system.

    ``supports_watermark`` tells the orchestrator whether ``read`` honours the
    watermark arguments; readers without support ignore them and do a full read.
    """

    supports_watermark: bool = False

    @abstractmethod
    def read(
        self,
        config: DataSourceConfig,
        watermark_field: Optional[str] = None,
        watermark_value: Optional[str] = None,
    ) -> List[Record]:
        raise NotImplementedError

    @abstractmethod
    def discover_schema(self, config: DataSourceConfig) -> List[str]:
        raise NotImplementedError

    def dry_run_preview(self, config: DataSourceConfig, sample_size: int = 10) -> List[Record]:
        return list(islice(self.read(config), max(0, sample_size)))


class BaseDestinationWriter(_ConnectorBase, ABC):
    """Writes records to a destination system."""

    @abstractmethod
    def write(self, config: DataSourceConfig, records: Sequence[Record]) -> int:
        """Write ``records`` and return how many were written."""
        raise NotImplementedError

    def validate_schema(self, config: DataSourceConfig, fields: Sequence[str]) -> bool:
        return True

    def dry_run_preview(self, config: DataSourceConfig, records: Sequence[Record], sample_size: int = 10) -> List[Record]:
        """Echo what would be written; never performs I/O."""
        return [dict(r) for r in islice(records, max(0, sample_size))]


def fields_of(records: Sequence[Record]) -> List[str]:
    """Union of field names across ``records`` in first-seen order."""
    seen: Dict[str, Any] = {}
    for record in records:
        for key in record:
            seen.setdefault(key, None)
    return list(seen)


def int_parameter(config: DataSourceConfig, name: str, default: Optional[int] = None) -> Optional[int]:
    raw = config.parameters.get(name)
    if raw is None or str(raw).strip() == "":
        return default
    try:
        return int(raw)
    except (TypeError, ValueError) as exc:
        raise ConnectorError(config.type, f"parameter {name!r} must be an integer, got {raw!r}") from exc
