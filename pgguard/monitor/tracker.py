"""Per-session alert state carried across poll cycles.

A session is tracked from the first cycle it is seen idle in transaction
until the first cycle it is not. Alert state only ever moves forward while
the entry exists, so each continuous idle episode yields at most one warning,
at most one critical and, if either fired, exactly one resolved event.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import IntEnum

from pgguard.alerts.models import AlertSeverity
from pgguard.monitor.thresholds import Level
from pgguard.postgres.models import Session
from pgguard.util import truncate_query

TRACKED_QUERY_LENGTH = 100


class AlertState(IntEnum):
    NEW = 0
    WARNING_SENT = 1
    CRITICAL_SENT = 2


@dataclass
class TrackedSession:
    pid: int
    application_name: str
    query: str
    first_seen: datetime
    state: AlertState = AlertState.NEW

    @property
    def warning_sent(self) -> bool:
        return self.state >= AlertState.WARNING_SENT

    @property
    def critical_sent(self) -> bool:
        return self.state >= AlertState.CRITICAL_SENT


@dataclass(frozen=True)
class ResolvedSession:
    """A tracked session that is no longer idle in transaction."""

    pid: int
    application_name: str
    total_duration: timedelta
    alerted: bool


class SessionTracker:
    """Table of TrackedSession keyed by backend pid."""

    def __init__(self) -> None:
        self._sessions: dict[int, TrackedSession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, pid: object) -> bool:
        return pid in self._sessions

    def get(self, pid: int) -> TrackedSession | None:
        return self._sessions.get(pid)

    def sessions(self) -> list[TrackedSession]:
        return list(self._sessions.values())

    def observe(self, session: Session, level: Level, now: datetime) -> list[AlertSeverity]:
        """Record a sighting and return the alerts that became due.

        WARNING and CRITICAL are both returned when a session passed both
        thresholds between two polls.
        """
        tracked = self._sessions.get(session.pid)
        if tracked is None:
            tracked = TrackedSession(
                pid=session.pid,
                application_name=session.application_name,
                query=truncate_query(session.query, TRACKED_QUERY_LENGTH),
                first_seen=now,
            )
            self._sessions[session.pid] = tracked

        due: list[AlertSeverity] = []
        if tracked.state < AlertState.WARNING_SENT and level >= Level.WARNING:
            tracked.state = AlertState.WARNING_SENT
            due.append(AlertSeverity.WARNING)
        if tracked.state < AlertState.CRITICAL_SENT and level >= Level.CRITICAL:
            tracked.state = AlertState.CRITICAL_SENT
            due.append(AlertSeverity.CRITICAL)
        return due

    def reconcile(self, seen_pids: set[int], now: datetime) -> list[ResolvedSession]:
        """Drop every tracked pid absent from this cycle's idle-in-transaction set."""
        gone = [pid for pid in self._sessions if pid not in seen_pids]
        resolved: list[ResolvedSession] = []
        for pid in gone:
            tracked = self._sessions.pop(pid)
            resolved.append(
                ResolvedSession(
                    pid=pid,
                    application_name=tracked.application_name,
                    total_duration=now - tracked.first_seen,
                    alerted=tracked.state > AlertState.NEW,
                )
            )
        return resolved
