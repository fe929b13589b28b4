"""asyncpg-backed snapshot source for pg_stat_activity.

Holds a deliberately small pool (at most three connections) tagged with
application_name=pguard so the monitor can recognise and exclude itself.
"""

import logging
import os
from typing import Any, Protocol
from urllib.parse import quote

import asyncpg  # type: ignore[import-untyped]

from pgguard.config import Settings
from pgguard.errors import ConfigurationError, SnapshotError, TerminationError
from pgguard.postgres.models import PoolSnapshot, Session, SessionState

logger = logging.getLogger(__name__)

APPLICATION_NAME = "pguard"

_CONNECTIONS_SQL = """\
SELECT
    pid,
    COALESCE(usename, '') AS usename,
    COALESCE(application_name, '') AS application_name,
    COALESCE(client_addr::text, 'local') AS client_addr,
    COALESCE(client_port, 0) AS client_port,
    backend_start,
    xact_start,
    query_start,
    COALESCE(state_change, backend_start) AS state_change,
    COALESCE(state, 'unknown') AS state,
    COALESCE(LEFT(query, 500), '') AS query,
    COALESCE(backend_type, '') AS backend_type
FROM pg_stat_activity
WHERE backend_type = 'client backend'
  AND pid != pg_backend_pid()
ORDER BY state_change DESC
"""

_SETTING_SQL = "SELECT setting::int FROM pg_settings WHERE name = $1"

_STATE_COUNTS_SQL = """\
SELECT COALESCE(state, 'unknown') AS state, COUNT(*) AS count
FROM pg_stat_activity
WHERE backend_type = 'client backend'
  AND pid != pg_backend_pid()
GROUP BY state
"""


class SnapshotSource(Protocol):
    """What the poll driver needs from the database."""

    async def get_pool_stats(self) -> PoolSnapshot: ...

    async def get_idle_transactions(self) -> list[Session]: ...

    async def terminate_backend(self, pid: int) -> bool: ...

    async def cancel_backend(self, pid: int) -> bool: ...


def build_dsn(settings: Settings) -> str:
    """Resolve the connection string: database_url, then DATABASE_URL, then host fields.

    Raises:
        ConfigurationError: If no connection is configured at all.
    """
    if settings.database_url:
        return settings.database_url

    env_url = os.environ.get("DATABASE_URL", "")
    if env_url:
        return env_url

    if not settings.db_host:
        raise ConfigurationError(
            "no database connection configured: set database_url, db_host, or DATABASE_URL"
        )

    auth = quote(settings.db_user, safe="")
    if settings.db_password:
        auth += ":" + quote(settings.db_password, safe="")
    return (
        f"postgresql://{auth}@{settings.db_host}:{settings.db_port}/"
        f"{quote(settings.db_name, safe='')}?sslmode={settings.db_sslmode}"
    )


def _row_to_session(row: Any) -> Session:
    return Session(
        pid=row["pid"],
        username=row["usename"],
        application_name=row["application_name"],
        client_addr=row["client_addr"],
        client_port=row["client_port"],
        backend_start=row["backend_start"],
        xact_start=row["xact_start"],
        query_start=row["query_start"],
        state_change=row["state_change"],
        state=SessionState.parse(row["state"]),
        query=row["query"],
        backend_type=row["backend_type"],
    )


class PostgresClient:
    """Thin wrapper around an asyncpg pool exposing the monitoring queries."""

    def __init__(self, pool: Any) -> None:
        self._pool = pool

    @classmethod
    async def connect(cls, settings: Settings) -> "PostgresClient":
        """Create the pool and verify the server answers.

        Raises:
            ConfigurationError: If no connection is configured.
            SnapshotError: If the server cannot be reached.
        """
        dsn = build_dsn(settings)
        try:
            pool = await asyncpg.create_pool(
                dsn=dsn,
                min_size=1,
                max_size=3,
                timeout=settings.db_connect_timeout.total_seconds(),
                server_settings={"application_name": APPLICATION_NAME},
            )
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, TimeoutError) as e:
            raise SnapshotError(f"connecting to database: {e}") from e

        client = cls(pool)
        try:
            await client.ping()
        except SnapshotError:
            await pool.close()
            raise
        logger.info("Connected to PostgreSQL")
        return client

    async def close(self) -> None:
        await self._pool.close()

    async def ping(self) -> None:
        try:
            await self._pool.fetchval("SELECT 1")
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, TimeoutError) as e:
            raise SnapshotError(f"ping failed: {e}") from e

    async def get_connections(self) -> list[Session]:
        """All client backends except our own, most recently changed first."""
        try:
            rows = await self._pool.fetch(_CONNECTIONS_SQL)
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            raise SnapshotError(f"querying pg_stat_activity: {e}") from e
        return [_row_to_session(row) for row in rows]

    async def get_idle_transactions(self) -> list[Session]:
        return [s for s in await self.get_connections() if s.is_idle_in_transaction]

    async def get_pool_stats(self) -> PoolSnapshot:
        try:
            max_connections = await self._pool.fetchval(_SETTING_SQL, "max_connections")
            reserved = await self._pool.fetchval(_SETTING_SQL, "superuser_reserved_connections")
            rows = await self._pool.fetch(_STATE_COUNTS_SQL)
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            raise SnapshotError(f"getting pool stats: {e}") from e

        total = active = idle = idle_in_transaction = 0
        for row in rows:
            count: int = row["count"]
            total += count
            state = SessionState.parse(row["state"])
            if state is SessionState.ACTIVE:
                active = count
            elif state is SessionState.IDLE:
                idle = count
            elif state in (SessionState.IDLE_IN_TRANSACTION, SessionState.IDLE_IN_TRANSACTION_ABORTED):
                idle_in_transaction += count

        return PoolSnapshot(
            max_connections=max_connections,
            reserved_superuser=reserved,
            total=total,
            active=active,
            idle=idle,
            idle_in_transaction=idle_in_transaction,
        )

    async def terminate_backend(self, pid: int) -> bool:
        """Terminate a backend, rolling back its open transaction."""
        return await self._signal_backend("pg_terminate_backend", pid)

    async def cancel_backend(self, pid: int) -> bool:
        """Cancel the backend's current query; less destructive than terminate."""
        return await self._signal_backend("pg_cancel_backend", pid)

    async def _signal_backend(self, function: str, pid: int) -> bool:
        try:
            result: bool = await self._pool.fetchval(f"SELECT {function}($1)", pid)
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            raise TerminationError(f"{function}({pid}) failed: {e}") from e
        return bool(result)
