"""Shared pytest configuration and fixtures."""

from collections.abc import Callable, Generator
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from pgguard.config import Settings, get_settings
from pgguard.postgres.models import PoolSnapshot, Session, SessionState

T0 = datetime(2026, 1, 1, 12, 0, 0, tzinfo=UTC)


def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addoption(
        "--run-e2e",
        action="store_true",
        default=False,
        help="Run e2e tests that hit a real PostgreSQL server (requires DATABASE_URL)",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    if config.getoption("--run-e2e"):
        return
    skip_e2e = pytest.mark.skip(reason="Need --run-e2e flag to run")
    for item in items:
        if "e2e" in item.keywords:
            item.add_marker(skip_e2e)


@pytest.fixture(autouse=True)
def _no_dotenv(request: pytest.FixtureRequest, monkeypatch: pytest.MonkeyPatch) -> Generator[None]:
    """Block .env and YAML loading so a developer's local config never leaks into tests.

    Also clears the DATABASE_URL / SLACK_WEBHOOK_URL / WEBHOOK_URL fallbacks.
    """
    if "e2e" in request.keywords:
        yield
        return

    for var in ("DATABASE_URL", "SLACK_WEBHOOK_URL", "WEBHOOK_URL", "PGGUARD_CONFIG"):
        monkeypatch.delenv(var, raising=False)

    get_settings.cache_clear()
    original_env = Settings.model_config.get("env_file")
    original_yaml = Settings.model_config.get("yaml_file")
    Settings.model_config["env_file"] = None
    Settings.model_config["yaml_file"] = None

    try:
        yield
    finally:
        Settings.model_config["env_file"] = original_env
        Settings.model_config["yaml_file"] = original_yaml
        get_settings.cache_clear()


@pytest.fixture
def make_settings() -> Callable[..., Settings]:
    """Build real Settings with test defaults; keyword overrides win."""

    def _make(**overrides: Any) -> Settings:
        values: dict[str, Any] = {
            "database_url": "postgresql://postgres@db.test:5432/postgres",
            "idle_warning": timedelta(seconds=30),
            "idle_critical": timedelta(minutes=2),
            "pool_warning_percent": 75,
            "pool_critical_percent": 90,
            "poll_interval": timedelta(seconds=5),
            "poll_timeout": timedelta(seconds=5),
            "alert_cooldown": timedelta(minutes=5),
        }
        values.update(overrides)
        return Settings(**values)

    return _make


@pytest.fixture
def mock_settings(make_settings: Callable[..., Settings]) -> Settings:
    return make_settings()


@pytest.fixture
def make_session() -> Callable[..., Session]:
    """Build an idle-in-transaction Session whose state changed at `since`."""

    def _make(
        pid: int,
        since: datetime = T0,
        application_name: str = "api",
        client_addr: str = "10.0.0.5",
        state: SessionState = SessionState.IDLE_IN_TRANSACTION,
        query: str = "UPDATE orders SET status = 'paid' WHERE id = 42",
    ) -> Session:
        return Session(
            pid=pid,
            application_name=application_name,
            client_addr=client_addr,
            state=state,
            state_change=since,
            query=query,
            xact_start=since,
        )

    return _make


@pytest.fixture
def quiet_pool() -> PoolSnapshot:
    """A pool far below any threshold."""
    return PoolSnapshot(max_connections=100, reserved_superuser=3, total=10, active=5, idle=4, idle_in_transaction=1)
