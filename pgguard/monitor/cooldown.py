"""Rate limit for recurring pool-level alerts."""

from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from pgguard.alerts.models import AlertSeverity


def utc_now() -> datetime:
    return datetime.now(UTC)


class CooldownGate:
    """One independent last-sent timestamp per severity.

    Unlike per-session alerts, pool pressure re-fires once every cooldown
    window for as long as the condition lasts.
    """

    def __init__(self, clock: Callable[[], datetime] = utc_now) -> None:
        self._clock = clock
        self._last_sent: dict[AlertSeverity, datetime] = {}

    def last_sent(self, severity: AlertSeverity) -> datetime | None:
        return self._last_sent.get(severity)

    def can_send(self, severity: AlertSeverity, cooldown: timedelta) -> bool:
        """Return True and record now if the severity's cooldown has elapsed."""
        now = self._clock()
        last = self._last_sent.get(severity)
        if last is not None and now - last < cooldown:
            return False
        self._last_sent[severity] = now
        return True
