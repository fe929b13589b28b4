"""Poll-evaluate-act loop.

One cycle: fetch a snapshot, check pool usage through the cooldown gate,
check every idle-in-transaction session through the tracker, apply the
auto-terminate policy, reconcile sessions that went away, then dispatch the
queued alerts. Backend terminate calls run after the lock is released.
Cycles never overlap. The driver is the only writer of the tracker and
cooldown gate; readers such as the HTTP API go through
tracked_sessions(), which shares the driver's lock.
"""

import asyncio
import contextlib
import dataclasses
import logging
import time
from collections.abc import Callable
from datetime import datetime, timedelta
from enum import StrEnum

from pgguard.alerts.dispatcher import AlertDispatcher
from pgguard.alerts.models import (
    AlertEvent,
    AlertSeverity,
    idle_alert,
    pool_alert,
    resolved_alert,
    termination_alert,
)
from pgguard.config import Settings
from pgguard.errors import TerminationError
from pgguard.monitor.cooldown import CooldownGate, utc_now
from pgguard.monitor.termination import TERMINATION_REASON, is_eligible
from pgguard.monitor.thresholds import Level, classify
from pgguard.monitor.tracker import SessionTracker, TrackedSession
from pgguard.observability.metrics import (
    POLL_CYCLE_DURATION,
    POLL_CYCLES_TOTAL,
    POOL_USAGE_PERCENT,
    TERMINATIONS_TOTAL,
    TRACKED_SESSIONS,
)
from pgguard.postgres.client import SnapshotSource
from pgguard.postgres.models import PoolSnapshot, Session
from pgguard.util import format_duration

logger = logging.getLogger(__name__)


class CyclePhase(StrEnum):
    IDLE = "idle"
    FETCHING = "fetching"
    EVALUATING = "evaluating"
    DISPATCHING = "dispatching"


class PollDriver:
    def __init__(
        self,
        source: SnapshotSource,
        dispatcher: AlertDispatcher,
        settings: Settings,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._source = source
        self._dispatcher = dispatcher
        self._settings = settings
        self._clock = clock
        self._lock = asyncio.Lock()
        self.tracker = SessionTracker()
        self.cooldown = CooldownGate(clock)
        self.phase = CyclePhase.IDLE
        self.last_pool: PoolSnapshot | None = None

    async def tracked_sessions(self) -> list[TrackedSession]:
        """Copy of the tracked sessions, safe to use outside the driver task."""
        async with self._lock:
            return [dataclasses.replace(t) for t in self.tracker.sessions()]

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def run(self, stop: asyncio.Event) -> None:
        """Run cycles on a fixed schedule until stop is set.

        The first cycle starts immediately. Each following one is due one
        poll_interval after the previous deadline; when a cycle overruns, the
        next starts as soon as it finishes. Setting stop cancels the cycle in
        flight.
        """
        interval = self._settings.poll_interval.total_seconds()
        loop = asyncio.get_running_loop()
        deadline = loop.time()
        logger.info("Daemon running (polling_interval=%s)", format_duration(self._settings.poll_interval))

        while not stop.is_set():
            cycle = asyncio.create_task(self.run_cycle())
            stopper = asyncio.create_task(stop.wait())
            try:
                done, _ = await asyncio.wait({cycle, stopper}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                stopper.cancel()
                if not cycle.done():
                    cycle.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await stopper

            if cycle not in done:
                with contextlib.suppress(asyncio.CancelledError):
                    await cycle
                logger.info("Poll cycle cancelled by shutdown")
                break

            if cycle.exception() is not None:
                logger.error("Polling failed", exc_info=cycle.exception())

            deadline += interval
            delay = deadline - loop.time()
            if delay > 0:
                with contextlib.suppress(TimeoutError):
                    await asyncio.wait_for(stop.wait(), timeout=delay)

        self.phase = CyclePhase.IDLE
        logger.info("Daemon stopped")

    # ------------------------------------------------------------------
    # One cycle
    # ------------------------------------------------------------------

    async def run_cycle(self) -> list[AlertEvent] | None:
        """Run one poll cycle.

        Returns the events dispatched, or None when the snapshot could not be
        fetched (nothing is mutated in that case).
        """
        start = time.monotonic()
        timeout = self._settings.poll_timeout.total_seconds()

        self.phase = CyclePhase.FETCHING
        try:
            async with asyncio.timeout(timeout):
                pool = await self._source.get_pool_stats()
                sessions = await self._source.get_idle_transactions()
        except TimeoutError:
            self._finish(start, "fetch_error")
            logger.error("Snapshot fetch timed out after %.1fs; skipping cycle", timeout)
            return None
        except Exception:
            self._finish(start, "fetch_error")
            logger.exception("Snapshot fetch failed; skipping cycle")
            return None

        now = self._clock()
        idle_sessions = [s for s in sessions if s.is_idle_in_transaction]
        events: list[AlertEvent] = []

        async with self._lock:
            self.phase = CyclePhase.EVALUATING
            self.last_pool = pool
            events.extend(self._evaluate_pool(pool))
            for session in idle_sessions:
                events.extend(self._evaluate_session(session, now))
            candidates: list[tuple[Session, timedelta]] = []
            for session in idle_sessions:
                idle = session.idle_duration(now)
                if self._should_terminate(session, idle):
                    candidates.append((session, idle))
            resolved = self._reconcile({s.pid for s in idle_sessions}, now)
            TRACKED_SESSIONS.set(len(self.tracker))

        # Backend calls run after the lock is released.
        for session, idle in candidates:
            event = await self._terminate(session, idle)
            if event is not None:
                events.append(event)
        events.extend(resolved)

        self.phase = CyclePhase.DISPATCHING
        for event in events:
            await self._dispatcher.dispatch(event)

        self._finish(start, "success")
        return events

    def _finish(self, start: float, status: str) -> None:
        self.phase = CyclePhase.IDLE
        POLL_CYCLES_TOTAL.labels(status=status).inc()
        POLL_CYCLE_DURATION.observe(time.monotonic() - start)

    # ------------------------------------------------------------------
    # Evaluation steps
    # ------------------------------------------------------------------

    def _evaluate_pool(self, pool: PoolSnapshot) -> list[AlertEvent]:
        usage = pool.usage_percent
        POOL_USAGE_PERCENT.set(usage)
        level = classify(
            usage,
            float(self._settings.pool_warning_percent),
            float(self._settings.pool_critical_percent),
        )
        if level is Level.NONE:
            return []

        if level is Level.CRITICAL:
            severity = AlertSeverity.CRITICAL
            logger.error(
                "Connection pool critical (usage_percent=%.1f, used=%d, max=%d)", usage, pool.total, pool.usable
            )
        else:
            severity = AlertSeverity.WARNING
            logger.warning(
                "Connection pool warning (usage_percent=%.1f, used=%d, max=%d)", usage, pool.total, pool.usable
            )

        if not self.cooldown.can_send(severity, self._settings.alert_cooldown):
            return []
        return [pool_alert(severity, pool.total, pool.usable, usage)]

    def _evaluate_session(self, session: Session, now: datetime) -> list[AlertEvent]:
        idle = session.idle_duration(now)
        level = classify(idle, self._settings.idle_warning, self._settings.idle_critical)
        events: list[AlertEvent] = []
        for severity in self.tracker.observe(session, level, now):
            log = logger.error if severity is AlertSeverity.CRITICAL else logger.warning
            log(
                "Idle transaction %s (pid=%d, app=%s, duration=%s)",
                severity.value,
                session.pid,
                session.application_name,
                format_duration(idle),
            )
            events.append(idle_alert(severity, session.pid, session.application_name, idle, session.query))
        return events

    def _should_terminate(self, session: Session, idle: timedelta) -> bool:
        """Apply the auto-terminate policy; dry-run matches are only logged."""
        s = self._settings
        if not s.auto_terminate_enabled or idle < s.auto_terminate_after:
            return False
        if not is_eligible(
            session,
            idle,
            s.auto_terminate_exclude_apps,
            s.auto_terminate_exclude_ips,
            s.auto_terminate_protected_apps,
        ):
            return False

        if s.auto_terminate_dry_run:
            TERMINATIONS_TOTAL.labels(mode="dry_run").inc()
            logger.info(
                "Dry-run: would terminate (pid=%d, app=%s, duration=%s)",
                session.pid,
                session.application_name,
                format_duration(idle),
            )
            return False
        return True

    async def _terminate(self, session: Session, idle: timedelta) -> AlertEvent | None:
        logger.warning(
            "Auto-terminating connection (pid=%d, app=%s, duration=%s)",
            session.pid,
            session.application_name,
            format_duration(idle),
        )
        try:
            async with asyncio.timeout(self._settings.poll_timeout.total_seconds()):
                terminated = await self._source.terminate_backend(session.pid)
        except (TerminationError, TimeoutError) as e:
            logger.error("Failed to terminate backend (pid=%d): %s", session.pid, e)
            return None
        except Exception:
            logger.exception("Failed to terminate backend (pid=%d)", session.pid)
            return None

        if not terminated:
            logger.warning("Backend %d may have already terminated", session.pid)
            return None

        TERMINATIONS_TOTAL.labels(mode="terminated").inc()
        return termination_alert(session.pid, session.application_name, idle, TERMINATION_REASON)

    def _reconcile(self, seen_pids: set[int], now: datetime) -> list[AlertEvent]:
        events: list[AlertEvent] = []
        for resolved in self.tracker.reconcile(seen_pids, now):
            logger.info(
                "Idle transaction resolved (pid=%d, app=%s, duration=%s)",
                resolved.pid,
                resolved.application_name,
                format_duration(resolved.total_duration),
            )
            if resolved.alerted:
                events.append(resolved_alert(resolved.pid, resolved.application_name, resolved.total_duration))
        return events
