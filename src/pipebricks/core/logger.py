import logging
import sys
import contextvars
from typing import Optional

# Context variable to carry the current run id across the call chain
_RUN_ID: contextvars.ContextVar[str] = contextvars.ContextVar("run_id", default="-")


class _RunIdFilter(logging.Filter):
    """Logging filter that injects the current run id from contextvars into the record."""

    def filter(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        record.run_id = _RUN_ID.get()
        return True


def _build_formatter() -> logging.Formatter:
    return logging.Formatter(
        fmt="%(asctime)s | %(levelname)-8s | %(name)s | run=%(run_id)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def configure_root_logger(level: str = "INFO") -> None:
    """
    Configure the root handler and the pipebricks logger namespace.

    The root logger stays at WARNING so driver libraries (httpx, sqlalchemy)
    stay quiet; only the ``pipebricks`` namespace follows ``level``.

    Safe to call multiple times; it will not duplicate handlers.
    """
    root = logging.getLogger()
    package_logger = logging.getLogger("pipebricks")
    package_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for h in root.handlers:
        if isinstance(h, logging.StreamHandler) and any(isinstance(f, _RunIdFilter) for f in h.filters):
            return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(_build_formatter())
    handler.addFilter(_RunIdFilter())
    root.addHandler(handler)
    if root.level == logging.NOTSET or root.level > logging.WARNING:
        root.setLevel(logging.WARNING)


def get_logger(name: str = "pipebricks", level: Optional[str] = None) -> logging.Logger:
    """Get a module logger; the handler and run id filter live on the root logger."""
    logger = logging.getLogger(name)
    if level is not None:
        logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    return logger


def current_run_id() -> str:
    return _RUN_ID.get()


def push_run_id(run_id: Optional[str]) -> Optional[contextvars.Token]:
    """Set the current run id in context and return a token for later reset."""
    if not run_id:
        return None
    return _RUN_ID.set(run_id)


def reset_run_id(token: Optional[contextvars.Token]) -> None:
    """Reset the run id context using the provided token (if any)."""
    if token is None:
        return
    try:
        _RUN_ID.reset(token)
    except ValueError:
        # Token created in a different context (e.g. another worker thread)
        _RUN_ID.set("-")
