import logging
import os
from datetime import timedelta
from functools import lru_cache
from pathlib import Path
from typing import Any, ClassVar

import yaml
from pydantic import BaseModel, field_validator, model_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

from pgguard.errors import ConfigurationError
from pgguard.util import parse_duration

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path.home() / ".config" / "pguard" / "config.yaml"

_DURATION_FIELDS = (
    "db_connect_timeout",
    "idle_warning",
    "idle_critical",
    "poll_interval",
    "poll_timeout",
    "alert_cooldown",
    "auto_terminate_after",
)


class ProtectedApp(BaseModel):
    """An application that is only auto-terminated past its own idle threshold."""

    name: str
    min_idle_duration: timedelta = timedelta(0)
    require_confirmation: bool = False

    @field_validator("min_idle_duration", mode="before")
    @classmethod
    def _parse_min_idle(cls, value: Any) -> timedelta:
        return parse_duration(value)


class Settings(BaseSettings):
    """pgguard settings loaded from init kwargs, PGGUARD_* env vars, .env and the YAML config file."""

    # Connection (database_url wins, then DATABASE_URL, then the individual fields)
    database_url: str = ""
    db_host: str = ""
    db_port: int = 5432
    db_name: str = "postgres"
    db_user: str = "postgres"
    db_password: str = ""
    db_sslmode: str = "prefer"
    db_connect_timeout: timedelta = timedelta(seconds=10)

    # Thresholds
    idle_warning: timedelta = timedelta(seconds=30)
    idle_critical: timedelta = timedelta(minutes=2)
    pool_warning_percent: int = 75
    pool_critical_percent: int = 90

    # Polling
    poll_interval: timedelta = timedelta(seconds=5)
    poll_timeout: timedelta = timedelta(seconds=5)

    # Minimum gap between two pool alerts of the same severity
    alert_cooldown: timedelta = timedelta(minutes=5)

    # Slack (empty webhook URL disables it)
    slack_webhook_url: str = ""
    slack_channel: str = ""
    slack_mention_users: list[str] = []

    # Generic webhook (empty URL disables it)
    webhook_url: str = ""
    webhook_method: str = "POST"
    webhook_headers: dict[str, str] = {}

    # Auto-terminate
    auto_terminate_enabled: bool = False
    auto_terminate_dry_run: bool = True
    auto_terminate_after: timedelta = timedelta(minutes=5)
    auto_terminate_exclude_apps: list[str] = ["pguard", "pg_dump"]
    auto_terminate_exclude_ips: list[str] = []
    auto_terminate_protected_apps: list[ProtectedApp] = []

    # HTTP API (health / status / metrics)
    api_enabled: bool = False
    api_host: str = "127.0.0.1"
    api_port: int = 9182

    log_level: str = "INFO"

    model_config: ClassVar[SettingsConfigDict] = SettingsConfigDict(
        env_prefix="PGGUARD_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        yaml_file=os.environ.get("PGGUARD_CONFIG") or DEFAULT_CONFIG_PATH,
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            YamlConfigSettingsSource(settings_cls),
            file_secret_settings,
        )

    @field_validator(*_DURATION_FIELDS, mode="before")
    @classmethod
    def _parse_durations(cls, value: Any) -> timedelta:
        return parse_duration(value)

    @field_validator("webhook_method")
    @classmethod
    def _check_method(cls, value: str) -> str:
        method = value.upper()
        if method not in ("POST", "GET"):
            raise ValueError("webhook_method must be POST or GET")
        return method

    @model_validator(mode="after")
    def _check_thresholds(self) -> "Settings":
        if self.idle_warning >= self.idle_critical:
            raise ValueError("idle_warning must be less than idle_critical")
        if self.pool_warning_percent >= self.pool_critical_percent:
            raise ValueError("pool_warning_percent must be less than pool_critical_percent")
        if self.poll_interval <= timedelta(0) or self.poll_timeout <= timedelta(0):
            raise ValueError("poll_interval and poll_timeout must be positive")
        return self


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Lazily load and cache settings. Fails at first call, not at import time."""
    return Settings()


def unknown_yaml_keys(path: str | Path) -> list[str]:
    """Top-level keys in a YAML config file that match no Settings field.

    Raises:
        ConfigurationError: If the file is not valid YAML.
    """
    try:
        data = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigurationError(f"parsing {path}: {e}") from e
    if not isinstance(data, dict):
        return []
    return sorted(str(key) for key in data if key not in Settings.model_fields)


def load_settings(config_path: str | None = None) -> Settings:
    """Point the YAML source at config_path (if given) and reload settings.

    Unknown top-level YAML keys are ignored with a warning; settings are
    flat (idle_warning, not thresholds.idle_transaction.warning).

    Raises:
        ConfigurationError: If an explicit config_path does not exist or is not valid YAML.
    """
    if config_path:
        if not Path(config_path).is_file():
            raise ConfigurationError(f"config file not found: {config_path}")
        Settings.model_config["yaml_file"] = config_path

    yaml_file = Settings.model_config.get("yaml_file")
    if isinstance(yaml_file, str | Path) and Path(yaml_file).is_file():
        unknown = unknown_yaml_keys(yaml_file)
        if unknown:
            logger.warning(
                "Ignoring unknown keys in %s: %s (expected flat keys such as idle_warning)",
                yaml_file,
                ", ".join(unknown),
            )

    get_settings.cache_clear()
    return get_settings()
