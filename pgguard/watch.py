"""Foreground watch mode: poll and print changes as timestamped lines.

Shares the tracker and threshold rules with the daemon but sends nothing to
alert channels and never terminates backends.
"""

import asyncio
import contextlib
from collections.abc import Callable
from datetime import datetime, timedelta

from pgguard.alerts.models import AlertSeverity
from pgguard.config import Settings
from pgguard.errors import SnapshotError
from pgguard.monitor.cooldown import utc_now
from pgguard.monitor.thresholds import Level, classify
from pgguard.monitor.tracker import SessionTracker
from pgguard.postgres.client import SnapshotSource
from pgguard.postgres.models import PoolSnapshot, Session
from pgguard.util import format_duration, truncate_query

POLL_TIMEOUT_SECONDS = 5
WATCH_QUERY_LENGTH = 60

PREFIXES = {
    "WARN": "[!]",
    "CRIT": "[X]",
    "OK": "[+]",
    "ERROR": "[E]",
    "INFO": "[i]",
}


def format_event(level: str, message: str, at: datetime) -> list[str]:
    """Render a message as 'HH:MM:SS [x] text', indenting continuation lines."""
    timestamp = at.astimezone().strftime("%H:%M:%S")
    prefix = PREFIXES.get(level, "   ")
    first, *rest = message.split("\n")
    return [f"{timestamp} {prefix} {first}"] + [f"{' ' * len(timestamp)}     {line}" for line in rest]


class Watcher:
    def __init__(
        self,
        source: SnapshotSource,
        settings: Settings,
        clock: Callable[[], datetime] = utc_now,
        emit: Callable[[str], None] = print,
    ) -> None:
        self._source = source
        self._settings = settings
        self._clock = clock
        self._emit = emit
        self.tracker = SessionTracker()

    def event(self, level: str, message: str) -> None:
        for line in format_event(level, message, self._clock()):
            self._emit(line)

    async def run(self, interval: timedelta, stop: asyncio.Event) -> None:
        """Poll now and then once per interval until stop is set.

        A poll that overruns its slot is followed by one immediate poll; the
        missed slots are dropped.
        """
        self._emit("Watching PostgreSQL connections... (Ctrl+C to stop)")
        self._emit(
            f"Refresh: {format_duration(interval)} | "
            f"Thresholds: warn={format_duration(self._settings.idle_warning)}, "
            f"crit={format_duration(self._settings.idle_critical)}"
        )
        self._emit("")

        period = interval.total_seconds()
        loop = asyncio.get_running_loop()
        deadline = loop.time()
        while not stop.is_set():
            poll = asyncio.create_task(self._poll_reporting_errors())
            stopper = asyncio.create_task(stop.wait())
            try:
                done, _ = await asyncio.wait({poll, stopper}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                for task in (poll, stopper):
                    if not task.done():
                        task.cancel()
                        with contextlib.suppress(asyncio.CancelledError):
                            await task
            if poll not in done:
                break
            poll.result()

            deadline = max(deadline + period, loop.time())
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(stop.wait(), timeout=deadline - loop.time())

    async def _poll_reporting_errors(self) -> None:
        try:
            await self.poll_once()
        except (SnapshotError, TimeoutError) as e:
            self.event("ERROR", str(e) or "poll timed out")

    async def poll_once(self) -> None:
        """Fetch one snapshot and print threshold crossings, resolutions and pool pressure."""
        async with asyncio.timeout(POLL_TIMEOUT_SECONDS):
            pool = await self._source.get_pool_stats()
            sessions = await self._source.get_idle_transactions()

        now = self._clock()
        seen: set[int] = set()
        for session in sessions:
            seen.add(session.pid)
            self._check_session(session, now)

        for resolved in self.tracker.reconcile(seen, now):
            self.event(
                "OK",
                f"Resolved: PID {resolved.pid} ({resolved.application_name}) "
                f"- was idle for {format_duration(resolved.total_duration)}",
            )

        self._check_pool(pool)

    def _check_session(self, session: Session, now: datetime) -> None:
        duration = session.idle_duration(now)
        is_new = session.pid not in self.tracker
        level = classify(duration, self._settings.idle_warning, self._settings.idle_critical)
        label = f"PID {session.pid} ({session.application_name}) idle for {format_duration(duration)}"

        for severity in self.tracker.observe(session, level, now):
            if severity is AlertSeverity.WARNING and is_new:
                self.event("WARN", f"New idle transaction: {label}")
                self.event("", f"Query: {truncate_query(session.query, WATCH_QUERY_LENGTH)}")
            elif severity is AlertSeverity.WARNING:
                self.event("WARN", label)
            else:
                self.event("CRIT", label)

    def _check_pool(self, pool: PoolSnapshot) -> None:
        usage = pool.usage_percent
        level = classify(
            usage,
            float(self._settings.pool_warning_percent),
            float(self._settings.pool_critical_percent),
        )
        counts = f"{pool.total}/{pool.usable} ({usage:.0f}%)"
        if level is Level.CRITICAL:
            self.event("CRIT", f"Connection pressure: {counts} - approaching limit!")
        elif level is Level.WARNING:
            self.event("WARN", f"Connection pressure: {counts}")
