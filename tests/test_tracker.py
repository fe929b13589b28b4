"""Unit tests for the per-session tracking table."""

from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from pgguard.alerts.models import AlertSeverity
from pgguard.monitor.thresholds import Level
from pgguard.monitor.tracker import AlertState, SessionTracker
from pgguard.postgres.models import Session

T0 = datetime(2026, 1, 1, 12, 0, 0, tzinfo=UTC)


class TestObserve:
    def test_first_sighting_creates_entry(self, make_session: Callable[..., Session]) -> None:
        tracker = SessionTracker()
        due = tracker.observe(make_session(1001), Level.NONE, T0)

        assert due == []
        tracked = tracker.get(1001)
        assert tracked is not None
        assert tracked.first_seen == T0
        assert tracked.state is AlertState.NEW
        assert tracked.application_name == "api"

    def test_warning_fires_once(self, make_session: Callable[..., Session]) -> None:
        tracker = SessionTracker()
        session = make_session(1001)

        assert tracker.observe(session, Level.WARNING, T0) == [AlertSeverity.WARNING]
        assert tracker.observe(session, Level.WARNING, T0 + timedelta(seconds=5)) == []
        assert tracker.get(1001).warning_sent  # type: ignore[union-attr]

    def test_critical_after_warning(self, make_session: Callable[..., Session]) -> None:
        tracker = SessionTracker()
        session = make_session(1001)
        tracker.observe(session, Level.WARNING, T0)

        assert tracker.observe(session, Level.CRITICAL, T0 + timedelta(seconds=90)) == [AlertSeverity.CRITICAL]
        assert tracker.observe(session, Level.CRITICAL, T0 + timedelta(seconds=95)) == []

    def test_both_fire_when_first_seen_critical(self, make_session: Callable[..., Session]) -> None:
        tracker = SessionTracker()
        due = tracker.observe(make_session(1001), Level.CRITICAL, T0)

        assert due == [AlertSeverity.WARNING, AlertSeverity.CRITICAL]
        assert tracker.get(1001).state is AlertState.CRITICAL_SENT  # type: ignore[union-attr]

    def test_first_seen_not_overwritten(self, make_session: Callable[..., Session]) -> None:
        tracker = SessionTracker()
        session = make_session(1001)
        tracker.observe(session, Level.NONE, T0)
        tracker.observe(session, Level.WARNING, T0 + timedelta(seconds=30))

        assert tracker.get(1001).first_seen == T0  # type: ignore[union-attr]

    def test_query_truncated(self, make_session: Callable[..., Session]) -> None:
        tracker = SessionTracker()
        tracker.observe(make_session(1001, query="SELECT " + "x, " * 100), Level.NONE, T0)

        query = tracker.get(1001).query  # type: ignore[union-attr]
        assert len(query) == 100
        assert query.endswith("...")


class TestReconcile:
    def test_absent_pid_resolved(self, make_session: Callable[..., Session]) -> None:
        tracker = SessionTracker()
        tracker.observe(make_session(1001), Level.WARNING, T0)
        tracker.observe(make_session(1002), Level.NONE, T0)

        resolved = tracker.reconcile({1002}, T0 + timedelta(seconds=210))

        assert len(resolved) == 1
        assert resolved[0].pid == 1001
        assert resolved[0].total_duration == timedelta(seconds=210)
        assert resolved[0].alerted is True
        assert 1001 not in tracker
        assert 1002 in tracker

    def test_never_alerted_session(self, make_session: Callable[..., Session]) -> None:
        tracker = SessionTracker()
        tracker.observe(make_session(1001), Level.NONE, T0)

        (resolved,) = tracker.reconcile(set(), T0 + timedelta(seconds=10))

        assert resolved.alerted is False
        assert len(tracker) == 0

    def test_pid_reuse_starts_fresh(self, make_session: Callable[..., Session]) -> None:
        tracker = SessionTracker()
        tracker.observe(make_session(1001), Level.CRITICAL, T0)
        tracker.reconcile(set(), T0 + timedelta(seconds=5))

        later = T0 + timedelta(seconds=60)
        due = tracker.observe(make_session(1001, since=later), Level.WARNING, later)

        assert due == [AlertSeverity.WARNING]
        assert tracker.get(1001).first_seen == later  # type: ignore[union-attr]
