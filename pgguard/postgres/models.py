"""Value types for one pg_stat_activity snapshot.

Sessions and pool snapshots are produced fresh every poll cycle and never
mutated afterwards.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import StrEnum


class SessionState(StrEnum):
    ACTIVE = "active"
    IDLE = "idle"
    IDLE_IN_TRANSACTION = "idle in transaction"
    IDLE_IN_TRANSACTION_ABORTED = "idle in transaction (aborted)"
    FASTPATH = "fastpath function call"
    DISABLED = "disabled"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: str | None) -> "SessionState":
        try:
            return cls(value or "unknown")
        except ValueError:
            return cls.UNKNOWN


IDLE_IN_TRANSACTION_STATES = frozenset(
    {SessionState.IDLE_IN_TRANSACTION, SessionState.IDLE_IN_TRANSACTION_ABORTED}
)


@dataclass(frozen=True)
class Session:
    """A single client backend from pg_stat_activity."""

    pid: int
    application_name: str
    client_addr: str
    state: SessionState
    state_change: datetime
    query: str = ""
    username: str = ""
    client_port: int = 0
    backend_start: datetime | None = None
    xact_start: datetime | None = None
    query_start: datetime | None = None
    backend_type: str = "client backend"

    def idle_duration(self, now: datetime) -> timedelta:
        """Time spent in the current state."""
        return now - self.state_change

    def transaction_duration(self, now: datetime) -> timedelta:
        """Time since the open transaction started; zero when none is open."""
        if self.xact_start is None:
            return timedelta(0)
        return now - self.xact_start

    @property
    def is_idle_in_transaction(self) -> bool:
        return self.state in IDLE_IN_TRANSACTION_STATES


@dataclass(frozen=True)
class PoolSnapshot:
    """Aggregate connection counters for the server."""

    max_connections: int
    reserved_superuser: int
    total: int = 0
    active: int = 0
    idle: int = 0
    idle_in_transaction: int = 0

    @property
    def usable(self) -> int:
        return self.max_connections - self.reserved_superuser

    @property
    def available(self) -> int:
        return self.usable - self.total

    @property
    def usage_percent(self) -> float:
        """Share of non-reserved capacity in use; 100 when there is none."""
        if self.usable <= 0:
            return 100.0
        return self.total / self.usable * 100
