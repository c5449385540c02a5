from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .config import ENGINES, MODES
from .errors import ConfigurationError, InvalidModeConfigurationError

LEGACY_MODES = {"docker": "container", "kubectl": "orchestrated", "kubernetes": "orchestrated"}


class TLSOptions(BaseModel):
    enabled: bool = False
    ca_file: Optional[str] = None
    allow_invalid: bool = False


class Target(BaseModel):
    """A configured backup source reached through one execution mode."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    name: str
    engine: str = Field(exclude=True)
    mode: str = "container"
    enabled: bool = True

    # Connection parameters
    container: Optional[str] = None
    volume: Optional[str] = None
    namespace: Optional[str] = None
    pod: Optional[str] = None
    pod_container: Optional[str] = None
    host: Optional[str] = None
    port: Optional[int] = None
    path: Optional[str] = None
    mount_path: Optional[str] = None
    data_dir: Optional[str] = None

    # Credential references: environment variable names, never values
    user: Optional[str] = None
    password_env: Optional[str] = None
    uri_env: Optional[str] = None
    api_key_env: Optional[str] = None

    # Engine options
    databases: List[str] = Field(default_factory=list)
    custom_format: bool = Field(default=False, alias="is_timescaledb")
    ssl: bool = False
    auth_db: str = "admin"
    replica_set: Optional[str] = None
    tls: TLSOptions = TLSOptions()

    @field_validator("name")
    @classmethod
    def _validate_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Target name must not be empty.")
        if "/" in value or value.startswith("."):
            raise ValueError(f"Target name '{value}' may not contain '/' or start with '.'.")
        return value

    @field_validator("engine")
    @classmethod
    def _validate_engine(cls, value: str) -> str:
        if value not in ENGINES:
            raise ValueError(f"Unknown engine '{value}'.")
        return value

    @field_validator("mode", mode="before")
    @classmethod
    def _normalize_mode(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = LEGACY_MODES.get(value, value)
            if value not in MODES:
                raise ValueError(f"Unknown mode '{value}'. Expected one of: {', '.join(MODES)}")
        return value

    @field_validator("databases", mode="before")
    @classmethod
    def _split_databases(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @model_validator(mode="after")
    def _require_mode_fields(self) -> "Target":
        missing = self.missing_connection_fields()
        if missing:
            raise ValueError(
                f"{self.engine} target '{self.name}' in {self.mode} mode requires: {', '.join(missing)}"
            )
        return self

    def missing_connection_fields(self) -> List[str]:
        if self.mode == "container":
            if self.engine == "volumes":
                if self.volume or (self.container and self.mount_path):
                    return []
                return ["volume (or container + mount_path)"]
            return [] if self.container else ["container"]
        if self.mode == "orchestrated":
            required = {"namespace": self.namespace, "pod": self.pod}
            if self.engine == "volumes":
                required["mount_path"] = self.mount_path
            return [key for key, value in required.items() if not value]
        if self.mode == "network":
            if self.engine == "mongo" and self.uri_env:
                return []
            return [] if self.host else ["host"]
        return [] if self.path else ["path"]

    @property
    def key(self) -> str:
        return f"{self.engine}/{self.name}"

    def location(self) -> str:
        if self.mode == "container":
            return self.container or f"volume:{self.volume}"
        if self.mode == "orchestrated":
            return f"{self.namespace}/{self.pod}"
        if self.mode == "network":
            return f"{self.host}:{self.port}" if self.port else str(self.host or self.uri_env)
        return str(self.path)

    def to_record(self) -> Dict[str, Any]:
        data = self.model_dump(mode="json", exclude_none=True, exclude_defaults=True)
        record: Dict[str, Any] = {"name": self.name, "enabled": self.enabled, "mode": self.mode}
        record.update({key: value for key, value in data.items() if key not in record})
        return record


def parse_target(engine: str, record: Dict[str, Any]) -> Target:
    if not isinstance(record, dict):
        raise ConfigurationError(f"{engine} registry entry must be an object, got {type(record).__name__}.")
    payload = dict(record)
    payload["engine"] = engine
    try:
        return Target.model_validate(payload)
    except ValidationError as exc:
        name = record.get("name", "<unnamed>")
        if any(err.get("loc") == () or "requires:" in str(err.get("msg", "")) for err in exc.errors()):
            raise InvalidModeConfigurationError(
                f"Invalid {engine} target '{name}': {_first_message(exc)}",
                details={"engine": engine, "name": name},
            ) from exc
        raise ConfigurationError(f"Invalid {engine} target '{name}': {_first_message(exc)}") from exc


def _first_message(exc: ValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return str(exc)
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    message = str(first.get("msg", ""))
    if message.startswith("Value error, "):
        message = message[len("Value error, "):]
    return f"{location}: {message}" if location else message
