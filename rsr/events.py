from __future__ import annotations

import logging
import sys
from collections import deque
from datetime import datetime
from threading import Lock
from typing import Any

from .settings import settings


LEVELS: dict[str, int] = {"DEBUG": 0, "INFO": 1, "WARN": 2, "ERROR": 3}
_ALIASES = {"WARNING": "WARN", "CRITICAL": "ERROR"}
_STDLIB = {"DEBUG": logging.DEBUG, "INFO": logging.INFO, "WARN": logging.WARNING, "ERROR": logging.ERROR}

logger = logging.getLogger("rsr")

_lock = Lock()
_min_level = "INFO"
_recent: deque[dict[str, Any]] = deque(maxlen=max(1, settings.event_buffer))


def utc_now() -> str:
    return datetime.utcnow().strftime("%Y-%m-%dT%H:%M:%SZ")


def normalize_level(level: str) -> str:
    """Map a user-supplied level name onto debug|info|warn|error (upper-cased)."""
    name = str(level or "").strip().upper()
    name = _ALIASES.get(name, name)
    if name not in LEVELS:
        raise ValueError(f"Invalid log level '{level}'. Use one of: debug, info, warn, error.")
    return name


def set_level(level: str) -> None:
    global _min_level
    name = normalize_level(level)
    with _lock:
        _min_level = name


def get_level() -> str:
    with _lock:
        return _min_level


def enabled_for(level: str) -> bool:
    return LEVELS[normalize_level(level)] >= LEVELS[get_level()]


def log_event(level: str, message: str, service_name: str | None = None, version: str | None = None) -> bool:
    """Emit one event if it passes the configured minimum level.

    Returns True when the event was emitted.
    """
    name = normalize_level(level)
    if not enabled_for(name):
        return False

    prefix = f"[{service_name}] " if service_name else ""
    suffix = f" (version: {version})" if version else ""
    logger.log(_STDLIB[name], "%s%s%s", prefix, message, suffix)

    with _lock:
        _recent.append(
            {
                "ts": utc_now(),
                "level": name,
                "service_name": service_name,
                "version": version,
                "message": message,
            }
        )
    return True


def latest_events(limit: int = 100, service_name: str | None = None) -> list[dict[str, Any]]:
    with _lock:
        items = list(_recent)
    items.reverse()
    if service_name:
        items = [e for e in items if e["service_name"] == service_name]
    return items[: max(0, int(limit))]


def clear_events() -> None:
    with _lock:
        _recent.clear()


def configure_logging(level: str | None = None) -> None:
    """Attach a timestamped stream handler to the 'rsr' logger (daemon mode)."""
    if level:
        set_level(level)
    if not any(getattr(h, "_rsr_handler", False) for h in logger.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s", "%Y-%m-%d %H:%M:%S"))
        handler._rsr_handler = True  # type: ignore[attr-defined]
        logger.addHandler(handler)
    # Filtering happens in log_event; let everything that reaches the logger through.
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
