"""Fan alert events out to the configured channels.

Channels are passed in explicitly; an empty list means alerts are only
logged. A failing channel never prevents delivery to the others.
"""

import logging
import os
from collections.abc import Sequence
from typing import Protocol

from pgguard.alerts.models import AlertEvent, AlertSeverity, connectivity_alert
from pgguard.alerts.slack import SlackChannel
from pgguard.alerts.webhook import WebhookChannel
from pgguard.config import Settings
from pgguard.observability.metrics import ALERT_DISPATCH_FAILURES, ALERTS_TOTAL

logger = logging.getLogger(__name__)


class AlertChannel(Protocol):
    name: str

    async def send(self, event: AlertEvent) -> None: ...


class AlertDispatcher:
    def __init__(self, channels: Sequence[AlertChannel] = ()) -> None:
        self.channels = list(channels)

    async def dispatch(self, event: AlertEvent) -> int:
        """Log the event and send it to every channel. Returns the number of successful deliveries."""
        ALERTS_TOTAL.labels(kind=event.kind.value, severity=event.severity.value).inc()
        if event.severity is AlertSeverity.CRITICAL:
            logger.error("Alert %s", event.summary())
        elif event.severity is AlertSeverity.WARNING:
            logger.warning("Alert %s", event.summary())
        else:
            logger.info("Alert %s", event.summary())

        delivered = 0
        for channel in self.channels:
            try:
                await channel.send(event)
                delivered += 1
            except Exception:
                ALERT_DISPATCH_FAILURES.labels(channel=channel.name).inc()
                logger.exception("Failed to send %s alert via %s", event.kind, channel.name)
        return delivered

    async def test_channels(self) -> None:
        """Send a connectivity message to each channel; failures are only warnings."""
        event = connectivity_alert()
        for channel in self.channels:
            try:
                await channel.send(event)
                logger.info("%s alerts enabled", channel.name)
            except Exception as e:
                logger.warning("%s test failed: %s", channel.name, e)


def channels_from_settings(settings: Settings) -> list[AlertChannel]:
    """Build the enabled channels. SLACK_WEBHOOK_URL / WEBHOOK_URL fill in empty URLs."""
    channels: list[AlertChannel] = []

    slack_url = settings.slack_webhook_url or os.environ.get("SLACK_WEBHOOK_URL", "")
    if slack_url:
        channels.append(SlackChannel(slack_url, settings.slack_channel, settings.slack_mention_users))

    webhook_url = settings.webhook_url or os.environ.get("WEBHOOK_URL", "")
    if webhook_url:
        channels.append(WebhookChannel(webhook_url, settings.webhook_method, settings.webhook_headers))

    if not channels:
        logger.info("No alert channels configured; alerts will only be logged")
    return channels
