"""
Custom exception classes for the pipebricks engine.

Provides structured error handling with domain-specific exceptions for the
connector, mapping, orchestration and scheduling layers of the engine.
"""

from typing import List, Optional


class PipebricksError(Exception):
    """Base exception class for all pipebricks exceptions."""

    pass


class UnknownConnectorType(PipebricksError):
    """Raised when no reader or writer is registered for a connector type token."""

    def __init__(self, type_token: str, role: str):
        self.type_token = type_token
        self.role = role
        super().__init__(f"No {role} connector registered for type={type_token!r}")


class ConnectorError(PipebricksError):
    """
    Raised when a connector fails during read, write, schema discovery or
    connection setup.

    The underlying library error is attached as ``__cause__`` by raising with
    ``raise ConnectorError(...) from exc``.

    Example:
        >>> try:
        ...     client.get(url)
        ... except httpx.HTTPError as exc:
        ...     raise ConnectorError("rest", f"GET {url} failed") from exc
    """

    def __init__(self, connector_type: str, message: str):
        self.connector_type = connector_type
        super().__init__(f"[{connector_type}] {message}")


class BatchWriteError(ConnectorError):
    """Raised when a chunk fails; ``rows_written`` counts rows in earlier successful chunks."""

    def __init__(self, connector_type: str, message: str, *, rows_written: int):
        self.rows_written = rows_written
        super().__init__(connector_type, message)


class ValidationError(PipebricksError):
    """Raised for invalid configuration, mappings, expressions or operations."""

    pass


class TransformationError(PipebricksError):
    """Raised when a transformation cannot be applied to a single record."""

    def __init__(self, expression: str, message: str):
        self.expression = expression
        super().__init__(f"{expression!r}: {message}")


class PipelineNotFound(PipebricksError):
    def __init__(self, pipeline_id: str):
        self.pipeline_id = pipeline_id
        super().__init__(f"Pipeline {pipeline_id!r} not found")


class RunNotFound(PipebricksError):
    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Run {run_id!r} not found")


class ConcurrentRunRejected(PipebricksError):
    """Raised when a run is requested for a pipeline that already has one in flight."""

    def __init__(self, pipeline_id: str):
        self.pipeline_id = pipeline_id
        super().__init__(f"Pipeline {pipeline_id!r} already has a run in progress")


class PipelineExecutionError(PipebricksError):
    """
    Raised by the orchestrator when a stage fails.

    ``stage`` names the failing stage (SourceRead, Mapping, Transform,
    DestinationWrite); ``detailed_message`` is the flattened causal chain that
    ends up on the run log.
    """

    def __init__(self, stage: str, message: str, *, rows_written: int = 0):
        self.stage = stage
        self.message = message
        self.rows_written = rows_written
        super().__init__(f"{stage} failed: {message}")

    @property
    def detailed_message(self) -> str:
        return flatten_error_chain(self)


class RunCancelledError(PipelineExecutionError):
    """Raised when a run observes its cancellation token at a stage or batch boundary."""

    def __init__(self, stage: str, *, rows_written: int = 0):
        super().__init__(stage, "run cancelled", rows_written=rows_written)


def flatten_error_chain(exc: BaseException) -> str:
    """Join the non-empty messages of ``exc`` and its causes with `` --> ``.

    Follows ``__cause__`` first, then ``__context__``. Consecutive duplicate
    messages are dropped.
    """
    messages: List[str] = []
    seen = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        text = str(current).strip()
        if text and (not messages or messages[-1] != text):
            messages.append(text)
        current = current.__cause__ or current.__context__
    return " --> ".join(messages) or exc.__class__.__name__
