"""Tests for the foreground watch mode."""

import asyncio
import re
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import pytest

from pgguard.config import Settings
from pgguard.errors import SnapshotError
from pgguard.postgres.models import PoolSnapshot, Session
from pgguard.watch import Watcher, format_event

T0 = datetime(2026, 1, 1, 12, 0, 0, tzinfo=UTC)

TIMESTAMP = re.compile(r"^\d{2}:\d{2}:\d{2} ")


class FakeClock:
    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class FakeSource:
    def __init__(self, pool: PoolSnapshot) -> None:
        self.pool = pool
        self.sessions: list[Session] = []
        self.fetch_error: Exception | None = None
        self.fetches = 0

    async def get_pool_stats(self) -> PoolSnapshot:
        self.fetches += 1
        if self.fetch_error is not None:
            raise self.fetch_error
        return self.pool

    async def get_idle_transactions(self) -> list[Session]:
        return list(self.sessions)

    async def terminate_backend(self, pid: int) -> bool:
        raise AssertionError("watch never terminates")

    async def cancel_backend(self, pid: int) -> bool:
        raise AssertionError("watch never cancels")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def source(quiet_pool: PoolSnapshot) -> FakeSource:
    return FakeSource(quiet_pool)


@pytest.fixture
def lines() -> list[str]:
    return []


@pytest.fixture
def watcher(
    source: FakeSource, make_settings: Callable[..., Settings], clock: FakeClock, lines: list[str]
) -> Watcher:
    return Watcher(source, make_settings(), clock=clock, emit=lines.append)


def _messages(lines: list[str]) -> list[str]:
    """Drop the HH:MM:SS prefix from event lines."""
    assert all(TIMESTAMP.match(line) for line in lines)
    return [line[9:] for line in lines]


# ---------------------------------------------------------------------------
# Line format
# ---------------------------------------------------------------------------


class TestFormatEvent:
    def test_prefixes(self) -> None:
        assert format_event("WARN", "x", T0)[0][9:] == "[!] x"
        assert format_event("CRIT", "x", T0)[0][9:] == "[X] x"
        assert format_event("OK", "x", T0)[0][9:] == "[+] x"
        assert format_event("ERROR", "x", T0)[0][9:] == "[E] x"
        assert format_event("INFO", "x", T0)[0][9:] == "[i] x"
        assert format_event("", "x", T0)[0][9:] == "    x"

    def test_local_clock_time(self) -> None:
        (line,) = format_event("OK", "done", T0)
        assert line.startswith(T0.astimezone().strftime("%H:%M:%S"))

    def test_continuation_lines_indented(self) -> None:
        first, second = format_event("WARN", "one\ntwo", T0)
        assert first.endswith("[!] one")
        assert second == " " * 13 + "two"


# ---------------------------------------------------------------------------
# One poll
# ---------------------------------------------------------------------------


class TestPollOnce:
    async def test_new_session_past_warning(
        self,
        watcher: Watcher,
        source: FakeSource,
        lines: list[str],
        make_session: Callable[..., Session],
    ) -> None:
        source.sessions = [make_session(1002, since=T0 - timedelta(seconds=45))]

        await watcher.poll_once()

        assert _messages(lines) == [
            "[!] New idle transaction: PID 1002 (api) idle for 45s",
            "    Query: UPDATE orders SET status = 'paid' WHERE id = 42",
        ]

    async def test_new_session_past_critical(
        self,
        watcher: Watcher,
        source: FakeSource,
        lines: list[str],
        make_session: Callable[..., Session],
    ) -> None:
        source.sessions = [make_session(1002, since=T0 - timedelta(minutes=3), query="SELECT " + "x" * 100)]

        await watcher.poll_once()

        new, query, critical = _messages(lines)
        assert new == "[!] New idle transaction: PID 1002 (api) idle for 3m 0s"
        assert query.startswith("    Query: SELECT x")
        assert query.endswith("...")
        assert len(query) == len("    Query: ") + 60
        assert critical == "[X] PID 1002 (api) idle for 3m 0s"

    async def test_crossings_then_resolution(
        self,
        watcher: Watcher,
        source: FakeSource,
        clock: FakeClock,
        lines: list[str],
        make_session: Callable[..., Session],
    ) -> None:
        source.sessions = [make_session(1002, since=T0 - timedelta(seconds=10))]
        await watcher.poll_once()
        assert lines == []

        clock.advance(seconds=30)
        await watcher.poll_once()
        clock.advance(seconds=90)
        await watcher.poll_once()
        await watcher.poll_once()

        clock.advance(seconds=5)
        source.sessions = []
        await watcher.poll_once()

        assert _messages(lines) == [
            "[!] PID 1002 (api) idle for 40s",
            "[X] PID 1002 (api) idle for 2m 10s",
            "[+] Resolved: PID 1002 (api) - was idle for 2m 5s",
        ]
        assert len(watcher.tracker) == 0

    async def test_short_idle_still_reported_resolved(
        self,
        watcher: Watcher,
        source: FakeSource,
        clock: FakeClock,
        lines: list[str],
        make_session: Callable[..., Session],
    ) -> None:
        source.sessions = [make_session(1003, since=T0 - timedelta(seconds=2))]
        await watcher.poll_once()

        clock.advance(seconds=5)
        source.sessions = []
        await watcher.poll_once()

        assert _messages(lines) == ["[+] Resolved: PID 1003 (api) - was idle for 5s"]

    async def test_pool_pressure(self, watcher: Watcher, source: FakeSource, lines: list[str]) -> None:
        source.pool = PoolSnapshot(max_connections=100, reserved_superuser=3, total=80)
        await watcher.poll_once()
        source.pool = PoolSnapshot(max_connections=100, reserved_superuser=3, total=95)
        await watcher.poll_once()

        assert _messages(lines) == [
            "[!] Connection pressure: 80/97 (82%)",
            "[X] Connection pressure: 95/97 (98%) - approaching limit!",
        ]

    async def test_fetch_error_propagates(self, watcher: Watcher, source: FakeSource) -> None:
        source.fetch_error = SnapshotError("getting pool stats: boom")

        with pytest.raises(SnapshotError):
            await watcher.poll_once()


# ---------------------------------------------------------------------------
# Loop
# ---------------------------------------------------------------------------


class TestRun:
    async def test_header_then_immediate_poll(
        self, watcher: Watcher, source: FakeSource, lines: list[str]
    ) -> None:
        stop = asyncio.Event()

        task = asyncio.create_task(watcher.run(timedelta(seconds=0.01), stop))
        await asyncio.sleep(0.1)
        stop.set()
        await asyncio.wait_for(task, timeout=1.0)

        assert lines[:3] == [
            "Watching PostgreSQL connections... (Ctrl+C to stop)",
            "Refresh: 0s | Thresholds: warn=30s, crit=2m 0s",
            "",
        ]
        assert source.fetches >= 2

    async def test_errors_printed_and_loop_continues(
        self, watcher: Watcher, source: FakeSource, lines: list[str]
    ) -> None:
        source.fetch_error = SnapshotError("getting pool stats: boom")
        stop = asyncio.Event()

        task = asyncio.create_task(watcher.run(timedelta(seconds=0.01), stop))
        await asyncio.sleep(0.1)
        stop.set()
        await asyncio.wait_for(task, timeout=1.0)

        errors = _messages(lines[3:])
        assert len(errors) >= 2
        assert set(errors) == {"[E] getting pool stats: boom"}

    async def test_stop_during_wait(self, watcher: Watcher, source: FakeSource) -> None:
        stop = asyncio.Event()

        task = asyncio.create_task(watcher.run(timedelta(minutes=5), stop))
        await asyncio.sleep(0.05)
        stop.set()
        await asyncio.wait_for(task, timeout=1.0)

        assert source.fetches == 1
