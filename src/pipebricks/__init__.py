"""pipebricks.

Pipeline execution engine: pluggable source readers and destination writers,
field mapping and automapping, record transformations, batched writes,
incremental loads, cron scheduling and run history with snapshot-based retry.
"""

from pipebricks.orchestrator import RunOrchestrator
from pipebricks.scheduler import Scheduler
from pipebricks.cli import main

__version__ = "0.1.0"

__all__ = [
    "RunOrchestrator",
    "Scheduler",
    "main",
]
