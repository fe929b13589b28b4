"""Generic JSON webhook channel."""

import logging
from collections.abc import Mapping
from datetime import UTC
from typing import Any, TypedDict

import httpx

from pgguard.alerts.models import AlertEvent, AlertKind
from pgguard.errors import AlertDeliveryError
from pgguard.util import truncate

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10
USER_AGENT = "pguard"
MAX_QUERY_LENGTH = 500

EVENT_NAMES: dict[AlertKind, str] = {
    AlertKind.POOL_PRESSURE: "connection_pool",
    AlertKind.SESSION_IDLE: "idle_transaction",
    AlertKind.SESSION_RESOLVED: "idle_transaction_resolved",
    AlertKind.SESSION_TERMINATED: "connection_terminated",
    AlertKind.TEST: "test",
}


class WebhookPayload(TypedDict):
    event: str
    severity: str
    timestamp: str
    data: dict[str, Any]


def build_webhook_payload(event: AlertEvent) -> WebhookPayload:
    data: dict[str, Any] = dict(event.payload)
    if "query" in data:
        data["query"] = truncate(str(data["query"]), MAX_QUERY_LENGTH)
    return {
        "event": EVENT_NAMES[event.kind],
        "severity": event.severity.value,
        "timestamp": event.timestamp.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ"),
        "data": data,
    }


class WebhookChannel:
    name = "webhook"

    def __init__(
        self,
        url: str,
        method: str = "POST",
        headers: Mapping[str, str] | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self.url = url
        self.method = method.upper() or "POST"
        self.headers = dict(headers or {})
        self.timeout = timeout

    async def send(self, event: AlertEvent) -> None:
        """Send the JSON payload; custom headers override the defaults.

        Raises:
            AlertDeliveryError: On transport errors or a non-2xx response.
        """
        if not self.url:
            raise AlertDeliveryError("webhook URL not configured")

        headers = {"Content-Type": "application/json", "User-Agent": USER_AGENT, **self.headers}
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.request(
                    self.method, self.url, json=build_webhook_payload(event), headers=headers
                )
        except httpx.TimeoutException as e:
            raise AlertDeliveryError(f"webhook request timed out after {self.timeout}s: {e}") from e
        except httpx.HTTPError as e:
            raise AlertDeliveryError(f"sending webhook request: {e}") from e

        if not response.is_success:
            raise AlertDeliveryError(f"webhook returned status {response.status_code}")
        logger.debug("Webhook alert sent: %s", event.kind)
