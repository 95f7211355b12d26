from __future__ import annotations

import json
import time
from dataclasses import dataclass
from typing import Any, Callable, Union

from .docker_ops import RuntimeInspector
from .errors import InspectionError, ProbeError
from .fieldpath import extract
from .settings import settings


class _Absent:
    """A version that could not be determined.

    Compares unequal to everything, itself included, so two unknown
    versions can never be mistaken for a match.
    """

    _instance: "_Absent | None" = None

    def __new__(cls) -> "_Absent":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __eq__(self, other: object) -> bool:
        return False

    def __ne__(self, other: object) -> bool:
        return True

    def __hash__(self) -> int:
        return id(self)

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "ABSENT"


ABSENT = _Absent()

Version = Union[str, _Absent]


def is_absent(v: object) -> bool:
    return v is ABSENT or v is None


def versions_equal(a: Version, b: Version) -> bool:
    """True only for two concrete tokens that are byte-identical."""
    if is_absent(a) or is_absent(b):
        return False
    if not isinstance(a, str) or not isinstance(b, str):
        return False
    return a.encode("utf-8") == b.encode("utf-8")


def version_or_none(v: Version) -> str | None:
    return None if is_absent(v) else str(v)


@dataclass(frozen=True)
class HealthResult:
    healthy: bool
    version: Version = ABSENT
    status_code: int | None = None
    latency_ms: float | None = None
    message: str = ""


def _parse_version(body: bytes, path: str) -> Version:
    if not body or not body.strip():
        return ABSENT
    try:
        document: Any = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return ABSENT
    token = extract(document, path)
    return ABSENT if token is None else token


class HealthProbe:
    """Health and version checks issued from inside the target container."""

    def __init__(
        self,
        inspector: RuntimeInspector,
        timeout_s: float | None = None,
        retries: int | None = None,
        retry_delay_s: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.inspector = inspector
        self.timeout_s = settings.health_timeout_s if timeout_s is None else timeout_s
        self.retries = max(1, settings.health_retries if retries is None else int(retries))
        self.retry_delay_s = settings.health_retry_delay_s if retry_delay_s is None else retry_delay_s
        self._sleep = sleep

    def _request(self, name: str, endpoint: str, port: int, timeout_s: float | None) -> tuple[int, bytes]:
        try:
            return self.inspector.exec_http(name, port, endpoint, self.timeout_s if timeout_s is None else timeout_s)
        except InspectionError as e:
            raise ProbeError(str(e)) from e

    def probe(self, name: str, endpoint: str, port: int, version_path: str | None = None, timeout_s: float | None = None) -> HealthResult:
        """One request: health from the status code, version from the body."""
        start = time.time()
        try:
            status, body = self._request(name, endpoint, port, timeout_s)
        except ProbeError as e:
            latency_ms = round((time.time() - start) * 1000.0, 2)
            return HealthResult(healthy=False, latency_ms=latency_ms, message=f"No response: {e}")
        latency_ms = round((time.time() - start) * 1000.0, 2)
        healthy = 200 <= status < 300
        version: Version = _parse_version(body, version_path) if version_path else ABSENT
        return HealthResult(
            healthy=healthy,
            version=version,
            status_code=status,
            latency_ms=latency_ms,
            message="Healthy" if healthy else f"HTTP {status}",
        )

    def check_health(self, name: str, endpoint: str, port: int, timeout_s: float | None = None) -> bool:
        """2xx is healthy; anything else, including transport failure, is not."""
        return self.probe(name, endpoint, port, timeout_s=timeout_s).healthy

    def check_health_with_retry(
        self,
        name: str,
        endpoint: str,
        port: int,
        retries: int | None = None,
        delay_s: float | None = None,
        timeout_s: float | None = None,
    ) -> bool:
        attempts = max(1, self.retries if retries is None else int(retries))
        delay = self.retry_delay_s if delay_s is None else delay_s
        for attempt in range(1, attempts + 1):
            if self.check_health(name, endpoint, port, timeout_s=timeout_s):
                return True
            if attempt < attempts:
                self._sleep(delay)
        return False

    def read_version(self, name: str, endpoint: str, port: int, path: str, timeout_s: float | None = None) -> Version:
        """Version token at `path` in the JSON body, or ABSENT.

        A missing field, null, an empty body and a non-JSON body all read as ABSENT.
        """
        try:
            _, body = self._request(name, endpoint, port, timeout_s)
        except ProbeError:
            return ABSENT
        return _parse_version(body, path)
