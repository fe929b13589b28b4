"""Slack incoming-webhook channel."""

import logging
from collections.abc import Sequence
from typing import TypedDict

import httpx

from pgguard.alerts.models import AlertEvent, AlertKind, AlertSeverity
from pgguard.errors import AlertDeliveryError
from pgguard.util import truncate

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10
FOOTER = "pguard"

SEVERITY_COLORS: dict[AlertSeverity, str] = {
    AlertSeverity.WARNING: "#FFA500",
    AlertSeverity.CRITICAL: "#FF0000",
    AlertSeverity.INFO: "#0000FF",
    AlertSeverity.RESOLVED: "#00FF00",
}
DEFAULT_COLOR = "#808080"
TEST_COLOR = "#00FF00"


# --- Slack message types ---


class SlackField(TypedDict, total=False):
    title: str
    value: str
    short: bool


class SlackAttachment(TypedDict, total=False):
    color: str
    title: str
    text: str
    fields: list[SlackField]
    footer: str
    ts: int


class SlackMessage(TypedDict, total=False):
    channel: str
    text: str
    attachments: list[SlackAttachment]


# --- Rendering ---


def _field(title: str, value: object, short: bool = True) -> SlackField:
    return {"title": title, "value": str(value), "short": short}


def _fields_for(event: AlertEvent) -> tuple[str, list[SlackField]]:
    """Return the attachment title and fields for an event."""
    p = event.payload
    severity = event.severity.value

    if event.kind is AlertKind.SESSION_IDLE:
        return f"Idle Transaction [{severity}]", [
            _field("Application", p.get("application", "")),
            _field("PID", p.get("pid", "")),
            _field("Idle Duration", p.get("duration_human", "")),
            _field("Severity", severity),
            _field("Query", truncate(str(p.get("query", "")), 200), short=False),
        ]

    if event.kind is AlertKind.POOL_PRESSURE:
        return f"Connection Pool [{severity}]", [
            _field("Usage", f"{float(p.get('usage_percent', 0.0)):.0f}%"),  # type: ignore[arg-type]
            _field("Connections", f"{p.get('used_connections')} / {p.get('max_connections')}"),
            _field("Available", p.get("available_connections", "")),
            _field("Severity", severity),
        ]

    if event.kind is AlertKind.SESSION_TERMINATED:
        return "Connection Terminated", [
            _field("Application", p.get("application", "")),
            _field("PID", p.get("pid", "")),
            _field("Was Idle For", p.get("duration_human", "")),
            _field("Reason", p.get("reason", "")),
        ]

    if event.kind is AlertKind.SESSION_RESOLVED:
        return "Idle Transaction Resolved", [
            _field("Application", p.get("application", "")),
            _field("PID", p.get("pid", "")),
            _field("Total Duration", p.get("duration_human", "")),
        ]

    return "pguard Connected", []


def build_slack_message(event: AlertEvent, channel: str = "", mention_users: Sequence[str] = ()) -> SlackMessage:
    """Render an event as a Slack attachment message. Mentions are added for critical alerts only."""
    title, fields = _fields_for(event)
    color = TEST_COLOR if event.kind is AlertKind.TEST else SEVERITY_COLORS.get(event.severity, DEFAULT_COLOR)
    attachment: SlackAttachment = {
        "color": color,
        "title": title,
        "footer": FOOTER,
        "ts": int(event.timestamp.timestamp()),
    }
    if fields:
        attachment["fields"] = fields
    if event.kind is AlertKind.TEST:
        attachment["text"] = "Slack alerts are configured correctly."

    message: SlackMessage = {"attachments": [attachment]}
    if channel:
        message["channel"] = channel
    if event.severity is AlertSeverity.CRITICAL and mention_users:
        message["text"] = " ".join(mention_users)
    return message


class SlackChannel:
    name = "slack"

    def __init__(
        self,
        webhook_url: str,
        channel: str = "",
        mention_users: Sequence[str] = (),
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self.webhook_url = webhook_url
        self.channel = channel
        self.mention_users = list(mention_users)
        self.timeout = timeout

    async def send(self, event: AlertEvent) -> None:
        """POST the rendered message to the webhook.

        Raises:
            AlertDeliveryError: On transport errors or a non-200 response.
        """
        if not self.webhook_url:
            raise AlertDeliveryError("slack webhook URL not configured")

        message = build_slack_message(event, self.channel, self.mention_users)
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.webhook_url, json=message)
        except httpx.TimeoutException as e:
            raise AlertDeliveryError(f"slack request timed out after {self.timeout}s: {e}") from e
        except httpx.HTTPError as e:
            raise AlertDeliveryError(f"sending slack request: {e}") from e

        if response.status_code != 200:
            raise AlertDeliveryError(f"slack returned status {response.status_code}")
        logger.debug("Slack alert sent: %s", event.kind)
