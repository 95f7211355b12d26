from __future__ import annotations

import os
from dataclasses import dataclass


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    # Core
    config_path: str = os.getenv("RSR_CONFIG_PATH", "/etc/rsr/config.yaml")
    event_buffer: int = _env_int("RSR_EVENT_BUFFER", 500)

    # Health probing (in-container curl)
    health_timeout_s: float = _env_float("RSR_HEALTH_TIMEOUT_S", 5.0)
    health_retries: int = _env_int("RSR_HEALTH_RETRIES", 3)
    health_retry_delay_s: float = _env_float("RSR_HEALTH_RETRY_DELAY_S", 2.0)

    # Replica lifecycle
    settle_delay_s: float = _env_float("RSR_SETTLE_DELAY_S", 1.0)
    post_create_delay_s: float = _env_float("RSR_POST_CREATE_DELAY_S", 2.0)
    stop_timeout_s: int = _env_int("RSR_STOP_TIMEOUT_S", 10)
    replica_prefix: str = os.getenv("RSR_REPLICA_PREFIX", "failover-")
    unmanaged_label: str = os.getenv("RSR_UNMANAGED_LABEL", "coolify.managed")

    # oldest | newest | name
    primary_selection: str = os.getenv("RSR_PRIMARY_SELECTION", "oldest")

    # Optional basic auth for mutating API calls
    api_user: str | None = os.getenv("RSR_API_USER")
    api_password: str | None = os.getenv("RSR_API_PASSWORD")


settings = Settings()
