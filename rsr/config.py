from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from typing import Any, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import ConfigError
from .events import normalize_level
from .fieldpath import parse_field_path
from .settings import settings


SERVICE_NAME_RE = re.compile(r"^[a-z0-9][a-z0-9_.\-]{0,62}$")


def validate_service_name(name: str) -> None:
    if not SERVICE_NAME_RE.match(name):
        raise ValueError(
            "Invalid service name. Use lowercase letters/numbers and -_. starting with a letter or digit (max 63 chars)."
        )


def validate_health_path(path: str) -> None:
    # Keep it a path (not a full URL); the request is issued from inside the container.
    if not path.startswith("/"):
        raise ValueError("health_endpoint must start with '/'.")
    if "://" in path or ".." in path:
        raise ValueError("health_endpoint must be a simple absolute path (no scheme, no '..').")
    if any(ch.isspace() for ch in path):
        raise ValueError("health_endpoint must not contain whitespace.")


class ManagerConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    check_interval: int = Field(60, ge=1, description="Seconds between reconciliation cycles")
    log_level: str = Field("info", description="debug|info|warn|error")
    docker_network: str = Field("coolify", min_length=1)

    @field_validator("log_level")
    @classmethod
    def _level(cls, v: str) -> str:
        return normalize_level(v).lower()


class ServiceSpec(BaseModel):
    """One managed service, as read from the configuration store."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    name: str
    enabled: bool = False
    primary_pattern: str = Field(..., min_length=1)
    health_endpoint: str = Field(..., min_length=1)
    health_port: int = Field(..., ge=1, le=65535)
    version_path: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _legacy_keys(cls, data: Any) -> Any:
        if isinstance(data, dict) and "version_path" not in data and "version_jq_path" in data:
            data = dict(data)
            data["version_path"] = data.pop("version_jq_path")
        return data

    @field_validator("name")
    @classmethod
    def _name(cls, v: str) -> str:
        validate_service_name(v)
        return v

    @field_validator("primary_pattern")
    @classmethod
    def _pattern(cls, v: str) -> str:
        try:
            re.compile(v)
        except re.error as e:
            raise ValueError(f"primary_pattern is not a valid regular expression: {e}") from e
        return v

    @field_validator("health_endpoint")
    @classmethod
    def _endpoint(cls, v: str) -> str:
        validate_health_path(v)
        return v

    @field_validator("version_path")
    @classmethod
    def _version_path(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip()
        if not v or v == "null":
            return None
        parse_field_path(v)
        return v


@dataclass(frozen=True)
class FailoverConfig:
    """One immutable read of the configuration store."""

    manager: ManagerConfig
    services: dict[str, ServiceSpec] = field(default_factory=dict)
    invalid: dict[str, ConfigError] = field(default_factory=dict)
    # Names in file order, valid and invalid alike.
    order: tuple[str, ...] = ()

    def entry(self, name: str) -> ServiceSpec | ConfigError | None:
        if name in self.services:
            return self.services[name]
        return self.invalid.get(name)

    def enabled_services(self) -> list[ServiceSpec]:
        return [self.services[n] for n in self.order if n in self.services and self.services[n].enabled]


def _format_validation_error(err: ValidationError) -> str:
    parts = []
    for e in err.errors():
        loc = ".".join(str(x) for x in e.get("loc", ()) if x != "__root__")
        parts.append(f"{loc}: {e.get('msg')}" if loc else str(e.get("msg")))
    return "; ".join(parts)


def parse_config(raw: Any) -> FailoverConfig:
    """Validate a decoded YAML document.

    Manager settings are required to be well formed; each service entry is
    validated on its own and a broken entry is kept as a ConfigError.
    """
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigError("Configuration root must be a mapping.")

    manager_raw = raw.get("manager") or {}
    if not isinstance(manager_raw, dict):
        raise ConfigError("'manager' must be a mapping.")
    try:
        manager = ManagerConfig.model_validate(manager_raw)
    except ValidationError as e:
        raise ConfigError(f"Invalid manager settings: {_format_validation_error(e)}") from e

    services_raw = raw.get("services") or {}
    if not isinstance(services_raw, dict):
        raise ConfigError("'services' must be a mapping of service name to settings.")

    services: dict[str, ServiceSpec] = {}
    invalid: dict[str, ConfigError] = {}
    order: list[str] = []
    for key, body in services_raw.items():
        name = str(key)
        order.append(name)
        if not isinstance(body, dict):
            invalid[name] = ConfigError(f"Service '{name}' must be a mapping.", service=name)
            continue
        try:
            services[name] = ServiceSpec.model_validate({**body, "name": name})
        except ValidationError as e:
            invalid[name] = ConfigError(
                f"Incomplete or invalid configuration for service '{name}': {_format_validation_error(e)}",
                service=name,
            )
    return FailoverConfig(manager=manager, services=services, invalid=invalid, order=tuple(order))


class ConfigStore:
    """Read-only access to the YAML configuration file.

    The file is re-read on every load() so edits made by operator tooling are
    picked up on the next cycle.
    """

    def __init__(self, path: str | None = None):
        self.path = path or settings.config_path

    def exists(self) -> bool:
        return os.path.isfile(self.path)

    def load(self) -> FailoverConfig:
        if not self.exists():
            raise ConfigError(f"Config file not found: {self.path}")
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                raw = yaml.safe_load(f)
        except OSError as e:
            raise ConfigError(f"Cannot read config file {self.path}: {e}") from e
        except yaml.YAMLError as e:
            raise ConfigError(f"Config file {self.path} is not valid YAML: {e}") from e
        return parse_config(raw)

    def validate(self) -> list[str]:
        """Return every problem found; an empty list means the file is valid."""
        try:
            cfg = self.load()
        except ConfigError as e:
            return [str(e)]
        problems = [str(cfg.invalid[n]) for n in cfg.order if n in cfg.invalid]
        return problems
