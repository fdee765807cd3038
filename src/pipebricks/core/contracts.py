from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

# A record is an insertion-ordered mapping of field name to scalar or nested value.
Record = Dict[str, Any]


class Stage(str, Enum):
    SOURCE_READ = "SourceRead"
    MAPPING = "Mapping"
    TRANSFORM = "Transform"
    DESTINATION_WRITE = "DestinationWrite"


class RunStatus(str, Enum):
    RUNNING = "Running"
    SUCCESS = "Success"
    FAILED = "Failed"


class CancellationToken:
    """Cooperative cancellation flag shared by the run guard and a running pipeline."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class RunContext:
    """Orchestrator-provided context for a single pipeline execution.

    Carried through the stages so connectors, the batch writer and events can
    correlate their output with the run.
    """
    run_id: str                                   # Run log id
    pipeline_id: str
    pipeline_name: str
    triggered_by: str
    started_at: datetime
    retry_of_run_id: Optional[str] = None         # Set when retrying a failed run
    cancel_token: CancellationToken = field(default_factory=CancellationToken)
    rows_written: int = 0
    rows_skipped: int = 0
    errors: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
