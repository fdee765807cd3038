from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional

from pipebricks.core.contracts import CancellationToken
from pipebricks.core.exceptions import ConcurrentRunRejected


class PipelineRunGuard:
    """At most one in-flight run per pipeline id.

    A second ``acquire`` for an id that is already running raises
    ``ConcurrentRunRejected``; different pipelines never block each other.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._active: Dict[str, CancellationToken] = {}

    def acquire(self, pipeline_id: str, token: Optional[CancellationToken] = None) -> CancellationToken:
        with self._lock:
            if pipeline_id in self._active:
                raise ConcurrentRunRejected(pipeline_id)
            token = token or CancellationToken()
            self._active[pipeline_id] = token
            return token

    def release(self, pipeline_id: str) -> None:
        with self._lock:
            self._active.pop(pipeline_id, None)

    @contextmanager
    def hold(self, pipeline_id: str, token: Optional[CancellationToken] = None) -> Iterator[CancellationToken]:
        token = self.acquire(pipeline_id, token)
        try:
            yield token
        finally:
            self.release(pipeline_id)

    def is_running(self, pipeline_id: str) -> bool:
        with self._lock:
            return pipeline_id in self._active

    def running(self) -> List[str]:
        with self._lock:
            return list(self._active)

    def cancel(self, pipeline_id: str) -> bool:
        """Signal cancellation; returns False when nothing is running for the id."""
        with self._lock:
            token = self._active.get(pipeline_id)
        if token is None:
            return False
        token.cancel()
        return True

    def cancel_all(self) -> None:
        with self._lock:
            tokens = list(self._active.values())
        for token in tokens:
            token.cancel()
