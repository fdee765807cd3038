from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional, Protocol

from pydantic import BaseModel

from pipebricks.core.logger import get_logger

log = get_logger(__name__)


class NotificationSink(Protocol):
    """Delivery channel for run outcome notifications (email, chat, ...)."""

    def send_failure(
        self,
        pipeline_name: str,
        pipeline_id: str,
        error_message: str,
        stage: Optional[str],
        triggered_by: Optional[str],
        failed_at: datetime,
    ) -> None:
        ...

    def send_success(
        self,
        pipeline_name: str,
        pipeline_id: str,
        rows_processed: int,
        triggered_by: Optional[str],
        completed_at: datetime,
    ) -> None:
        ...


class NotificationSettings(BaseModel):
    enabled: bool = True
    notify_on_failure: bool = True
    notify_on_success: bool = False


class LoggingNotificationSink:
    """Default sink: records outcomes in the log."""

    def send_failure(self, pipeline_name, pipeline_id, error_message, stage, triggered_by, failed_at) -> None:
        log.error(
            f"Pipeline '{pipeline_name}' ({pipeline_id}) failed at {failed_at.isoformat()} "
            f"in stage {stage} [triggered_by={triggered_by}]: {error_message}"
        )

    def send_success(self, pipeline_name, pipeline_id, rows_processed, triggered_by, completed_at) -> None:
        log.info(
            f"Pipeline '{pipeline_name}' ({pipeline_id}) succeeded at {completed_at.isoformat()} "
            f"with {rows_processed} rows [triggered_by={triggered_by}]"
        )


class NotificationDispatcher:
    """Gates notifications by the current settings and never lets a sink error escape.

    ``settings_provider`` is called on every dispatch so settings changed
    elsewhere take effect without restarting the engine.
    """

    def __init__(
        self,
        sink: Optional[NotificationSink] = None,
        settings_provider: Optional[Callable[[], NotificationSettings]] = None,
    ):
        self.sink: NotificationSink = sink or LoggingNotificationSink()
        self._settings_provider = settings_provider or NotificationSettings

    def _settings(self) -> Optional[NotificationSettings]:
        try:
            return self._settings_provider()
        except Exception as exc:
            log.warning(f"Could not load notification settings: {exc}")
            return None

    def notify_failure(
        self,
        *,
        pipeline_name: str,
        pipeline_id: str,
        error_message: str,
        stage: Optional[str],
        triggered_by: Optional[str],
        failed_at: datetime,
    ) -> bool:
        settings = self._settings()
        if settings is None or not (settings.enabled and settings.notify_on_failure):
            return False
        try:
            self.sink.send_failure(pipeline_name, pipeline_id, error_message, stage, triggered_by, failed_at)
        except Exception as exc:
            log.warning(f"Failure notification for pipeline {pipeline_id} could not be sent: {exc}")
            return False
        return True

    def notify_success(
        self,
        *,
        pipeline_name: str,
        pipeline_id: str,
        rows_processed: int,
        triggered_by: Optional[str],
        completed_at: datetime,
    ) -> bool:
        settings = self._settings()
        if settings is None or not (settings.enabled and settings.notify_on_success):
            return False
        try:
            self.sink.send_success(pipeline_name, pipeline_id, rows_processed, triggered_by, completed_at)
        except Exception as exc:
            log.warning(f"Success notification for pipeline {pipeline_id} could not be sent: {exc}")
            return False
        return True
