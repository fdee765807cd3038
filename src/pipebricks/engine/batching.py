from __future__ import annotations

import time
from typing import Callable, Iterator, List, Optional, Sequence

from pipebricks.connectors.base import BaseDestinationWriter
from pipebricks.core.contracts import CancellationToken, Record, Stage
from pipebricks.core.exceptions import BatchWriteError, RunCancelledError
from pipebricks.core.logger import get_logger
from pipebricks.models.pipeline import DataSourceConfig

log = get_logger(__name__)


def chunked(records: Sequence[Record], batch_size: Optional[int]) -> Iterator[Sequence[Record]]:
    """Consecutive chunks of at most ``batch_size``; None or <= 0 yields a single chunk."""
    if not records:
        return
    if batch_size is None or batch_size <= 0:
        yield records
        return
    for start in range(0, len(records), batch_size):
        yield records[start : start + batch_size]


class BatchWriter:
    """Writes records through a destination writer in chunks with a pause between them.

    The pause is taken only between chunks, never before the first or after the
    last. A failing chunk stops the write; the raised ``BatchWriteError`` carries
    the number of rows written by the chunks before it.
    """

    def __init__(
        self,
        writer: BaseDestinationWriter,
        *,
        batch_size: Optional[int] = None,
        delay_seconds: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
        cancel_token: Optional[CancellationToken] = None,
    ):
        self.writer = writer
        self.batch_size = batch_size
        self.delay_seconds = delay_seconds or 0.0
        self._sleep = sleep
        self._cancel_token = cancel_token
        self.rows_written = 0
        self.chunk_sizes: List[int] = []

    def write(self, config: DataSourceConfig, records: Sequence[Record]) -> int:
        connector_type = getattr(self.writer, "connector_type", config.type)
        for index, chunk in enumerate(chunked(records, self.batch_size)):
            if index > 0:
                if self.delay_seconds > 0:
                    self._sleep(self.delay_seconds)
                if self._cancel_token is not None and self._cancel_token.cancelled:
                    raise RunCancelledError(Stage.DESTINATION_WRITE.value, rows_written=self.rows_written)
            try:
                written = self.writer.write(config, chunk)
            except Exception as exc:
                log.error(f"Chunk {index + 1} of size {len(chunk)} failed after {self.rows_written} rows: {exc}")
                raise BatchWriteError(
                    connector_type,
                    f"chunk {index + 1} failed after {self.rows_written} rows written",
                    rows_written=self.rows_written,
                ) from exc
            count = len(chunk) if written is None else int(written)
            self.rows_written += count
            self.chunk_sizes.append(len(chunk))
            log.debug(f"Chunk {index + 1}: wrote {count} rows ({self.rows_written} total)")
        return self.rows_written
