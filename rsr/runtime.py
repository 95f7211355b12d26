from __future__ import annotations

from dataclasses import dataclass, field, replace
from threading import Lock

from .events import utc_now


@dataclass(frozen=True)
class ServiceStatus:
    service: str
    primary_found: bool = False
    primary_name: str | None = None
    primary_healthy: bool = False
    primary_version: str | None = None
    replica_found: bool = False
    replica_name: str | None = None
    replica_healthy: bool = False
    replica_version: str | None = None
    in_sync: bool = False
    comparison: str | None = None
    stale: bool = False
    error: str | None = None
    checked_at: str = field(default_factory=utc_now)


class RuntimeState:
    """In-memory state shared by the reconcile loop and the operator API.

    Holds the last-known status per service and the previous health of each
    container so transitions are reported once. Nothing here survives a restart.
    """

    def __init__(self) -> None:
        self.lock = Lock()
        self.last_health: dict[str, bool] = {}  # container name -> last healthy
        self.statuses: dict[str, ServiceStatus] = {}
        self._service_locks: dict[str, Lock] = {}

    def mark_health(self, container_name: str, healthy: bool) -> bool | None:
        """Record health; returns the previous value (None the first time)."""
        with self.lock:
            prev = self.last_health.get(container_name)
            self.last_health[container_name] = healthy
            return prev

    def forget(self, container_name: str) -> None:
        with self.lock:
            self.last_health.pop(container_name, None)

    def set_status(self, st: ServiceStatus) -> None:
        with self.lock:
            self.statuses[st.service] = st

    def last_known(self, service: str, error: str) -> ServiceStatus:
        with self.lock:
            prev = self.statuses.get(service)
        if prev is None:
            return ServiceStatus(service=service, stale=True, error=error)
        return replace(prev, stale=True, error=error)

    def service_lock(self, service: str) -> Lock:
        """Serializes work on one service's resources (cycle vs. operator sync)."""
        with self.lock:
            lk = self._service_locks.get(service)
            if lk is None:
                lk = self._service_locks[service] = Lock()
            return lk
