from __future__ import annotations

import os
import socket
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from croniter import CroniterBadCronError, croniter
from pydantic import BaseModel, Field, field_validator, model_validator

from .errors import ConfigurationError

ENGINES = ("postgres", "mysql", "redis", "mongo", "nats", "qdrant", "volumes")
DATABASE_ENGINES = ("postgres", "mysql", "redis", "mongo", "nats")
MODES = ("container", "orchestrated", "network", "path")


# --- Snapshot store ----------------------------------------------------------


class RepositoryConfig(BaseModel):
    """Location and credentials of the restic repository."""

    url: Optional[str] = Field(default=None, description="Explicit repository URL.")
    url_env: str = Field(default="RESTIC_REPOSITORY", description="Environment variable holding the URL.")
    password_env: str = Field(default="RESTIC_PASSWORD", description="Environment variable holding the passphrase.")
    binary: str = "restic"
    timeout: int = 6 * 3600


class RetentionConfig(BaseModel):
    keep_last: int = 1
    keep_hourly: int = 24
    keep_daily: int = 7
    keep_weekly: int = 4
    keep_monthly: int = 6
    keep_yearly: int = 2

    @field_validator("*")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("Retention keep-counts must not be negative.")
        return value


# --- Execution ---------------------------------------------------------------


class ExecutionConfig(BaseModel):
    command_timeout: int = Field(default=3600, description="Seconds before an external command is killed.")
    container_runtime: str = "docker"
    kubectl: str = "kubectl"
    helper_image: str = "alpine"
    settle_timeout: int = Field(default=120, description="Upper bound for waiting on background saves.")
    settle_poll_interval: float = 1.0
    http_timeout: int = 300

    @field_validator("command_timeout", "settle_timeout", "http_timeout")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("Timeouts must be positive.")
        return value


# --- Notifications -----------------------------------------------------------


class NotificationsConfig(BaseModel):
    ntfy_url_env: Optional[str] = "NTFY_URL"
    slack_webhook_env: Optional[str] = "SLACK_WEBHOOK_URL"
    discord_webhook_env: Optional[str] = "DISCORD_WEBHOOK_URL"
    timeout: int = 10

    def resolve_ntfy_url(self) -> Optional[str]:
        return _getenv(self.ntfy_url_env)

    def resolve_slack_webhook(self) -> Optional[str]:
        return _getenv(self.slack_webhook_env)

    def resolve_discord_webhook(self) -> Optional[str]:
        return _getenv(self.discord_webhook_env)


def _getenv(name: Optional[str]) -> Optional[str]:
    if not name:
        return None
    return os.getenv(name) or None


# --- Scheduler ---------------------------------------------------------------


class SchedulerConfig(BaseModel):
    cron: str = "0 2 * * *"
    timezone: str = "UTC"
    run_on_startup: bool = False
    scope: str = "all"

    @field_validator("cron")
    @classmethod
    def _validate_cron(cls, value: str) -> str:
        try:
            croniter(value, datetime.now())
        except (CroniterBadCronError, ValueError) as exc:  # pragma: no cover - library errors
            raise ValueError(f"Invalid cron expression '{value}': {exc}") from exc
        return value

    @field_validator("timezone")
    @classmethod
    def _validate_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except ZoneInfoNotFoundError as exc:  # pragma: no cover - library errors
            raise ValueError(f"Unknown timezone '{value}'") from exc
        return value


# --- Root --------------------------------------------------------------------


class CoreConfig(BaseModel):
    registry_dir: Path = Path("/app/config")
    staging_dir: Path = Path("/tmp/backups")
    restore_dir: Path = Path("/tmp/restore")
    log_dir: Path = Path("/app/logs")
    log_retention_days: int = 30
    host: Optional[str] = Field(default=None, description="Host label for snapshots; machine hostname when unset.")
    repository: RepositoryConfig = RepositoryConfig()
    retention: RetentionConfig = RetentionConfig()
    execution: ExecutionConfig = ExecutionConfig()
    notifications: NotificationsConfig = NotificationsConfig()
    scheduler: Optional[SchedulerConfig] = None

    @field_validator("registry_dir", "staging_dir", "restore_dir", "log_dir")
    @classmethod
    def _expand_path(cls, value: Path) -> Path:
        return value.expanduser()

    @model_validator(mode="after")
    def _separate_scratch_dirs(self) -> "CoreConfig":
        if self.staging_dir.resolve() == self.restore_dir.resolve():
            raise ValueError("staging_dir and restore_dir must differ.")
        if self.staging_dir.resolve() in (Path("/"), Path.home().resolve()):
            raise ValueError(f"Refusing to use {self.staging_dir} as staging directory.")
        return self

    def host_label(self) -> str:
        return self.host or socket.gethostname()


def load_config(path: Path) -> CoreConfig:
    if not path.exists():
        raise ConfigurationError(f"Configuration file not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            raw = yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Invalid YAML in {path}: {exc}") from exc

    if not isinstance(raw, dict):
        raise ConfigurationError(f"Configuration root in {path} must be a mapping.")

    try:
        return CoreConfig.model_validate(raw)
    except Exception as exc:  # noqa: BLE001
        raise ConfigurationError(str(exc)) from exc


def resolve_engine(name: str) -> str:
    aliases: Dict[str, str] = {
        "pg": "postgres",
        "postgresql": "postgres",
        "mongodb": "mongo",
        "volume": "volumes",
        "vol": "volumes",
    }
    engine = aliases.get(name, name)
    if engine not in ENGINES:
        raise ConfigurationError(f"Unknown engine '{name}'. Expected one of: {', '.join(ENGINES)}")
    return engine


def engines_for_scope(scope: str) -> List[str]:
    if scope == "all":
        return list(ENGINES)
    if scope in ("databases", "db"):
        return list(DATABASE_ENGINES)
    if scope in ("volumes", "vol"):
        return ["volumes"]
    return [resolve_engine(scope)]
