from __future__ import annotations

import json
import os
import threading
import time
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from queue import Empty, Full, Queue
from typing import Any, Dict, List, Optional

from pipebricks.core.logger import current_run_id, get_logger

DEFAULT_SCHEMA_VERSION = "1.0"

log = get_logger(__name__)


@dataclass
class FunctionalEvent:
    """Structured functional event for pipeline run lifecycle and counts.

    Decoupled from debug logging; designed for stdout progress and durable JSONL.
    """

    schema_version: str = DEFAULT_SCHEMA_VERSION
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    seq_no: int = 0
    ts: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    run_id: str = "-"
    pipeline_id: str = "-"
    pipeline_name: str = "-"

    stage: str = "-"  # e.g. run, SourceRead, DestinationWrite
    status: str = "-"  # started|completed|failed

    duration_ms: Optional[int] = None
    counts: Optional[Dict[str, Any]] = None
    details: Optional[Dict[str, Any]] = None
    error: Optional[Dict[str, Any]] = None


class EventObserver:
    """Observer interface for handling functional events."""

    def handle(self, event: FunctionalEvent) -> None:  # pragma: no cover
        raise NotImplementedError

    def flush(self) -> None:
        pass


class StdoutObserver(EventObserver):
    """Emit concise human-readable progress to stdout (not via debug logger)."""

    def handle(self, event: FunctionalEvent) -> None:
        duration = f" duration_ms={event.duration_ms}" if event.duration_ms is not None else ""
        msg = (
            f"{event.ts} | run={event.run_id} | pipe={event.pipeline_name} | "
            f"{event.stage} {event.status}{duration}"
        )
        if event.counts:
            msg += f" | counts={event.counts}"
        if event.error:
            brief_err = {k: event.error.get(k) for k in ("code", "message") if k in event.error}
            msg += f" | error={brief_err}"
        print(msg)


class MemoryObserver(EventObserver):
    """Keeps every event in a list; used by tests and the CLI summary."""

    def __init__(self) -> None:
        self.events: List[FunctionalEvent] = []
        self._lock = threading.Lock()

    def handle(self, event: FunctionalEvent) -> None:
        with self._lock:
            self.events.append(event)

    def for_run(self, run_id: str) -> List[FunctionalEvent]:
        with self._lock:
            return [e for e in self.events if e.run_id == run_id]


class JSONLFileObserver(EventObserver):
    """Buffered JSONL writer, one file per day under ``base_path``."""

    def __init__(self, base_path: str, *, batch_size: int = 200) -> None:
        self.base_path = base_path
        self.batch_size = max(1, batch_size)
        self._buf: List[str] = []
        self._lock = threading.Lock()
        os.makedirs(base_path, exist_ok=True)

    @property
    def file_path(self) -> str:
        date_str = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        return os.path.join(self.base_path, f"events-{date_str}.jsonl")

    def handle(self, event: FunctionalEvent) -> None:
        with self._lock:
            self._buf.append(json.dumps(asdict(event), ensure_ascii=False, default=str))
            full = len(self._buf) >= self.batch_size
        if full:
            self.flush()

    def flush(self) -> None:
        with self._lock:
            if not self._buf:
                return
            lines, self._buf = self._buf, []
        with open(self.file_path, "a", encoding="utf-8") as f:
            f.write("\n".join(lines) + "\n")


class EventBus:
    """Async event bus with background dispatcher and bounded queue.

    One bus serves every run of an orchestrator; each event carries its own
    run id, taken from the logging context when not given explicitly.
    """

    def __init__(
        self,
        *,
        observers: Optional[List[EventObserver]] = None,
        queue_size: int = 10_000,
    ) -> None:
        self._observers: List[EventObserver] = list(observers or [])
        self._q: Queue[FunctionalEvent] = Queue(maxsize=max(1, queue_size))
        self._seq_no = 0
        self._seq_lock = threading.Lock()
        self._running = False
        self._worker: Optional[threading.Thread] = None
        self._dropped = 0

    @property
    def dropped(self) -> int:
        return self._dropped

    def _deliver(self, evt: FunctionalEvent) -> None:
        for obs in self._observers:
            try:
                obs.handle(evt)
            except Exception:
                # Isolate observer failures
                log.debug(f"Event observer {obs.__class__.__name__} failed", exc_info=True)

    def _dispatch_loop(self) -> None:
        while self._running:
            try:
                evt = self._q.get(timeout=0.5)
            except Empty:
                continue
            self._deliver(evt)

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._worker = threading.Thread(target=self._dispatch_loop, name="pipebricks_event_bus", daemon=True)
        self._worker.start()

    def shutdown(self) -> None:
        """Stop the dispatcher, drain queued events and flush observers."""
        self._running = False
        if self._worker is not None and self._worker.is_alive():
            self._worker.join(timeout=2.0)
        self._worker = None
        while True:
            try:
                evt = self._q.get_nowait()
            except Empty:
                break
            self._deliver(evt)
        for obs in self._observers:
            try:
                obs.flush()
            except Exception:
                log.debug(f"Event observer {obs.__class__.__name__} flush failed", exc_info=True)

    def publish(
        self,
        *,
        stage: str,
        status: str,
        run_id: Optional[str] = None,
        pipeline_id: str = "-",
        pipeline_name: str = "-",
        duration_ms: Optional[int] = None,
        counts: Optional[Dict[str, Any]] = None,
        details: Optional[Dict[str, Any]] = None,
        error: Optional[Dict[str, Any]] = None,
    ) -> None:
        with self._seq_lock:
            self._seq_no += 1
            seq_no = self._seq_no
        evt = FunctionalEvent(
            seq_no=seq_no,
            run_id=run_id or current_run_id(),
            pipeline_id=pipeline_id,
            pipeline_name=pipeline_name,
            stage=stage,
            status=status,
            duration_ms=duration_ms,
            counts=counts,
            details=details,
            error=error,
        )
        if not self._running:
            # Synchronous delivery when the dispatcher thread is not started
            self._deliver(evt)
            return
        try:
            self._q.put_nowait(evt)
        except Full:
            # Drop rather than block the run
            self._dropped += 1


class timed_stage:
    """Context manager to track duration of a stage and publish start/complete/fail events.

    Usage:
        with timed_stage(bus, "SourceRead", pipeline_id=p.id) as stage:
            records = reader.read(p.source)
            stage.counts = {"records_read": len(records)}

    ``bus`` may be None, in which case nothing is published.
    """

    def __init__(
        self,
        bus: Optional[EventBus],
        stage: str,
        *,
        pipeline_id: str = "-",
        pipeline_name: str = "-",
        details: Optional[Dict[str, Any]] = None,
    ):
        self.bus = bus
        self.stage = stage
        self.pipeline_id = pipeline_id
        self.pipeline_name = pipeline_name
        self.details = details
        self.counts: Optional[Dict[str, Any]] = None
        self._start: float = 0.0

    def _publish(self, status: str, **kwargs: Any) -> None:
        if self.bus is None:
            return
        try:
            self.bus.publish(
                stage=self.stage,
                status=status,
                pipeline_id=self.pipeline_id,
                pipeline_name=self.pipeline_name,
                details=self.details,
                **kwargs,
            )
        except Exception:
            # Event publishing never affects the run
            log.debug("Event publish failed", exc_info=True)

    def __enter__(self) -> "timed_stage":
        self._start = time.perf_counter()
        self._publish("started")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):  # type: ignore
        duration_ms = int((time.perf_counter() - self._start) * 1000)
        if exc_type is not None:
            self._publish(
                "failed",
                duration_ms=duration_ms,
                counts=self.counts,
                error={"code": exc_type.__name__, "message": str(exc_val)},
            )
        else:
            self._publish("completed", duration_ms=duration_ms, counts=self.counts)
        return False  # Don't suppress exceptions


def _env_flag(name: str, default: str) -> str:
    val = os.getenv(name)
    return val if val not in (None, "") else default


def build_default_bus() -> Optional[EventBus]:
    """Construct an EventBus from environment variables.

    PIPEBRICKS_EVENTS_ENABLED: "true" | "false" (default: "false")
    PIPEBRICKS_EVENTS_TRANSPORTS: comma list of stdout,jsonl (default: "stdout")
    PIPEBRICKS_EVENTS_PATH: base directory for jsonl (default: "./pipeline_events")
    PIPEBRICKS_EVENTS_QUEUE_SIZE: int (default: 10000)
    """
    enabled = _env_flag("PIPEBRICKS_EVENTS_ENABLED", "false").lower() == "true"
    if not enabled:
        return None

    transports = [s.strip() for s in _env_flag("PIPEBRICKS_EVENTS_TRANSPORTS", "stdout").split(",") if s.strip()]
    try:
        q_size = int(_env_flag("PIPEBRICKS_EVENTS_QUEUE_SIZE", "10000"))
    except ValueError:
        q_size = 10000

    observers: List[EventObserver] = []
    if "stdout" in transports:
        observers.append(StdoutObserver())
    if "jsonl" in transports:
        observers.append(JSONLFileObserver(_env_flag("PIPEBRICKS_EVENTS_PATH", "./pipeline_events")))

    return EventBus(observers=observers, queue_size=q_size)
