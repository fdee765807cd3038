from __future__ import annotations

from typing import Optional, Sequence

import httpx

from pipebricks.connectors.base import BaseDestinationWriter
from pipebricks.connectors.http_auth import build_request_headers
from pipebricks.connectors.registry import register_connection_tester, register_destination_writer
from pipebricks.core.contracts import Record
from pipebricks.core.exceptions import ConnectorError
from pipebricks.models.pipeline import DataSourceConfig

DEFAULT_TIMEOUT_SECONDS = 30.0


@register_destination_writer("webhook")
class WebhookDestinationWriter(BaseDestinationWriter):
    """POSTs records to the connection string URL.

    ``sendAs=record`` (default) sends one request per record; ``sendAs=batch``
    sends the whole chunk as a JSON array in a single request.
    """

    connector_type = "webhook"

    def __init__(self, client: Optional[httpx.Client] = None):
        super().__init__()
        self._client = client

    def write(self, config: DataSourceConfig, records: Sequence[Record]) -> int:
        if not records:
            return 0
        url = config.connection_string
        headers = build_request_headers(config.parameters)
        send_as = (config.parameters.get("sendAs") or "record").lower()
        client = self._client or httpx.Client(timeout=DEFAULT_TIMEOUT_SECONDS)
        sent = 0
        try:
            if send_as == "batch":
                client.post(url, json=list(records), headers=headers).raise_for_status()
                return len(records)
            for record in records:
                client.post(url, json=record, headers=headers).raise_for_status()
                sent += 1
            return sent
        except httpx.HTTPError as exc:
            raise ConnectorError(self.connector_type, f"POST {url} failed after {sent} records") from exc
        finally:
            if self._client is None:
                client.close()


@register_connection_tester("webhook")
def check_webhook_connection(connection_string: str) -> None:
    with httpx.Client(timeout=DEFAULT_TIMEOUT_SECONDS) as client:
        resp = client.request("HEAD", connection_string)
    if resp.status_code >= 500:
        raise ConnectorError("webhook", f"HEAD {connection_string} returned {resp.status_code}")
