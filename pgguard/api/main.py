"""FastAPI health/status endpoints served alongside the daemon.

The app shares the daemon's event loop. It only reads the driver's tracked
sessions through PollDriver.tracked_sessions(), which takes the driver lock.
"""

import asyncio
import logging
from datetime import datetime

from fastapi import FastAPI, Response
from fastapi.responses import PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel

from pgguard.monitor.driver import PollDriver
from pgguard.postgres.client import PostgresClient

logger = logging.getLogger(__name__)

HEALTH_TIMEOUT_SECONDS = 5.0


# ---------------------------------------------------------------------------
# Pydantic models
# ---------------------------------------------------------------------------


class TrackedSessionResponse(BaseModel):
    """A session the daemon is currently tracking."""

    pid: int
    application: str
    query: str
    first_seen: datetime
    warning_sent: bool
    critical_sent: bool


class StatusResponse(BaseModel):
    """Response body for GET /status."""

    max_connections: int
    total: int
    active: int
    idle: int
    idle_in_transaction: int
    available: int
    usage_percent: float
    idle_transactions_count: int
    phase: str
    tracked_sessions: list[TrackedSessionResponse]


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app(driver: PollDriver, client: PostgresClient) -> FastAPI:
    app = FastAPI(title="pgguard")
    app.state.driver = driver
    app.state.client = client

    @app.get("/health", response_class=PlainTextResponse)
    async def health() -> PlainTextResponse:
        """Ping the database."""
        try:
            async with asyncio.timeout(HEALTH_TIMEOUT_SECONDS):
                await client.ping()
        except Exception as exc:
            return PlainTextResponse(f"unhealthy: {exc}", status_code=503)
        return PlainTextResponse("ok")

    @app.get("/status", response_model=StatusResponse)
    async def status() -> StatusResponse | PlainTextResponse:
        """Live pool counters plus the daemon's tracked sessions."""
        try:
            async with asyncio.timeout(HEALTH_TIMEOUT_SECONDS):
                pool = await client.get_pool_stats()
                idle = await client.get_idle_transactions()
        except Exception as exc:
            logger.exception("Status query failed")
            return PlainTextResponse(f"error: {exc}", status_code=500)

        tracked = await driver.tracked_sessions()
        return StatusResponse(
            max_connections=pool.max_connections,
            total=pool.total,
            active=pool.active,
            idle=pool.idle,
            idle_in_transaction=pool.idle_in_transaction,
            available=pool.available,
            usage_percent=pool.usage_percent,
            idle_transactions_count=len(idle),
            phase=driver.phase.value,
            tracked_sessions=[
                TrackedSessionResponse(
                    pid=t.pid,
                    application=t.application_name,
                    query=t.query,
                    first_seen=t.first_seen,
                    warning_sent=t.warning_sent,
                    critical_sent=t.critical_sent,
                )
                for t in tracked
            ],
        )

    @app.get("/metrics")
    async def metrics() -> Response:
        """Expose Prometheus metrics in exposition format."""
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app
