"""Channel-independent alert events.

The monitor decides *what* to send; each channel decides how to render it.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import StrEnum

from pgguard.util import format_duration


class AlertKind(StrEnum):
    POOL_PRESSURE = "pool_pressure"
    SESSION_IDLE = "session_idle"
    SESSION_RESOLVED = "session_resolved"
    SESSION_TERMINATED = "session_terminated"
    TEST = "test"


class AlertSeverity(StrEnum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"
    RESOLVED = "resolved"


@dataclass(frozen=True)
class AlertEvent:
    kind: AlertKind
    severity: AlertSeverity
    payload: dict[str, object] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def summary(self) -> str:
        """One-line description used for logging."""
        fields = ", ".join(f"{k}={v}" for k, v in self.payload.items() if k != "query")
        return f"[{self.severity.upper()}] {self.kind} ({fields})"


# ---------------------------------------------------------------------------
# Constructors
# ---------------------------------------------------------------------------


def pool_alert(severity: AlertSeverity, used: int, max_connections: int, usage_percent: float) -> AlertEvent:
    return AlertEvent(
        kind=AlertKind.POOL_PRESSURE,
        severity=severity,
        payload={
            "used_connections": used,
            "max_connections": max_connections,
            "available_connections": max_connections - used,
            "usage_percent": round(usage_percent, 2),
        },
    )


def idle_alert(
    severity: AlertSeverity, pid: int, application: str, duration: timedelta, query: str
) -> AlertEvent:
    return AlertEvent(
        kind=AlertKind.SESSION_IDLE,
        severity=severity,
        payload={
            "pid": pid,
            "application": application,
            "duration_seconds": duration.total_seconds(),
            "duration_human": format_duration(duration),
            "query": query,
        },
    )


def resolved_alert(pid: int, application: str, total_duration: timedelta) -> AlertEvent:
    return AlertEvent(
        kind=AlertKind.SESSION_RESOLVED,
        severity=AlertSeverity.RESOLVED,
        payload={
            "pid": pid,
            "application": application,
            "duration_seconds": total_duration.total_seconds(),
            "duration_human": format_duration(total_duration),
        },
    )


def termination_alert(pid: int, application: str, duration: timedelta, reason: str) -> AlertEvent:
    return AlertEvent(
        kind=AlertKind.SESSION_TERMINATED,
        severity=AlertSeverity.INFO,
        payload={
            "pid": pid,
            "application": application,
            "duration_seconds": duration.total_seconds(),
            "duration_human": format_duration(duration),
            "reason": reason,
        },
    )


def connectivity_alert() -> AlertEvent:
    return AlertEvent(
        kind=AlertKind.TEST,
        severity=AlertSeverity.INFO,
        payload={"message": "pguard alerts are configured correctly"},
    )
