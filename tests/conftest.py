from __future__ import annotations

import itertools
import json
import re
from collections import namedtuple
from typing import Any

import pytest
import yaml
from docker.errors import APIError, DockerException, ImageNotFound, NotFound

from rsr import events
from rsr.config import ConfigStore
from rsr.docker_ops import RuntimeInspector
from rsr.health import HealthProbe
from rsr.reconciler import Reconciler
from rsr.synth import ReplicaSynthesizer


ExecResult = namedtuple("ExecResult", "exit_code output")

_ids = itertools.count(1)
_URL_RE = re.compile(r"^http://localhost:(\d+)(/.*)$")


def digest(ch: str) -> str:
    return "sha256:" + ch * 64


class FakeHealth:
    """What a container's health endpoint answers to an in-container curl."""

    def __init__(self, status: int = 200, body: Any = None, port: int = 3000, path: str = "/health"):
        self.status = status
        self.body = body
        self.port = port
        self.path = path

    def respond(self, port: int, path: str) -> tuple[int, bytes] | None:
        if port != self.port:
            return None
        if path != self.path:
            return 404, b"not found"
        if self.body is None:
            return self.status, b""
        if isinstance(self.body, bytes):
            return self.status, self.body
        if isinstance(self.body, str):
            return self.status, self.body.encode()
        return self.status, json.dumps(self.body).encode()


def healthy(version: str | None = None, **kw) -> FakeHealth:
    body = {"status": "healthy"}
    if version is not None:
        body["version"] = version
    return FakeHealth(200, body, **kw)


class FakeContainer:
    def __init__(
        self,
        client: "FakeDockerClient",
        name: str,
        image: str,
        image_id: str,
        env: list[str] | None = None,
        labels: dict[str, str] | None = None,
        mounts: list[dict[str, Any]] | None = None,
        status: str = "running",
        created: str | None = None,
        health: FakeHealth | None = None,
    ):
        n = next(_ids)
        self.client = client
        self.id = f"{n:012x}" + "f" * 52
        self.name = name
        self.status = status
        self.health = health
        self.removed = False
        self.attrs: dict[str, Any] = {
            "Id": self.id,
            "Name": "/" + name,
            "Created": created or f"2024-01-01T00:00:{n % 60:02d}.{n:06d}Z",
            "Image": image_id,
            "Config": {"Image": image, "Env": list(env or []), "Labels": dict(labels or {})},
            "Mounts": list(mounts or []),
        }
        self.run_kwargs: dict[str, Any] = {}
        self.log_output = b""

    @property
    def labels(self) -> dict[str, str]:
        return self.attrs["Config"]["Labels"]

    def reload(self) -> None:
        if self.removed:
            raise NotFound(f"No such container: {self.name}")

    def stop(self, timeout: int | None = None) -> None:
        self.client.calls.append(("stop", self.name))
        self.status = "exited"

    def remove(self, force: bool = False) -> None:
        self.client.calls.append(("remove", self.name))
        if self.status == "running" and not force:
            raise APIError("cannot remove a running container")
        self.removed = True
        self.client._containers.remove(self)

    def logs(self, stdout: bool = True, stderr: bool = True, tail: Any = "all", stream: bool = False, follow: bool = False) -> Any:
        self.client.calls.append(("logs", self.name))
        lines = self.log_output.splitlines(keepends=True)
        if tail != "all":
            lines = lines[-int(tail):] if int(tail) > 0 else []
        if stream:
            return iter(lines)
        return b"".join(lines)

    def exec_run(self, cmd: list[str], stdout: bool = True, stderr: bool = False) -> ExecResult:
        self.client.calls.append(("exec", self.name))
        if self.status != "running":
            raise APIError(f"Container {self.name} is not running")
        m = _URL_RE.match(cmd[-1])
        assert cmd[0] == "curl" and m, cmd
        resp = self.health.respond(int(m.group(1)), m.group(2)) if self.health else None
        if resp is None:
            # curl: (7) Failed to connect
            return ExecResult(7, b"\n000")
        status, body = resp
        return ExecResult(0, body + b"\n" + str(status).encode())


class FakeContainers:
    def __init__(self, client: "FakeDockerClient"):
        self.client = client

    def list(self, all: bool = False, filters: dict[str, Any] | None = None) -> list[FakeContainer]:
        self.client._check()
        self.client.calls.append(("list", (filters or {}).get("name")))
        out = []
        for c in self.client._containers:
            if not all and c.status != "running":
                continue
            pattern = (filters or {}).get("name")
            if pattern and not re.search(pattern, c.name):
                continue
            out.append(c)
        return out

    def get(self, key: str) -> FakeContainer:
        self.client._check()
        self.client.calls.append(("get", key))
        for c in self.client._containers:
            if c.name == key or c.id == key:
                return c
        for c in self.client._containers:
            if len(key) >= 4 and c.id.startswith(key):
                return c
        raise NotFound(f"No such container: {key}")

    def run(self, image: str, **kwargs: Any) -> FakeContainer:
        self.client._check()
        name = kwargs["name"]
        self.client.calls.append(("run", name))
        if self.client.reject_create:
            raise APIError("creation rejected")
        if image in self.client.image_ids:
            image_id = self.client.image_ids[image]
        elif image in self.client.known_ids:
            image_id = image
        else:
            raise ImageNotFound(f"No such image: {image}")
        if any(c.name == name for c in self.client._containers):
            raise APIError(f'Conflict. The container name "/{name}" is already in use')
        mounts = []
        for spec in kwargs.get("volumes") or []:
            src, dst, mode = spec.split(":", 2)
            entry = {"Destination": dst, "Mode": mode, "RW": "ro" not in mode.split(",")}
            if src.startswith("/"):
                entry.update({"Type": "bind", "Source": src})
            else:
                entry.update({"Type": "volume", "Name": src, "Source": f"/var/lib/docker/volumes/{src}/_data"})
            mounts.append(entry)
        tmpfs = dict(kwargs.get("tmpfs") or {})
        for dst in tmpfs:
            mounts.append({"Type": "tmpfs", "Source": "", "Destination": dst, "Mode": "", "RW": True, "Propagation": ""})
        c = FakeContainer(
            self.client,
            name,
            image,
            image_id,
            env=kwargs.get("environment"),
            labels=kwargs.get("labels"),
            mounts=mounts,
            health=self.client.image_health.get(image) or self.client.image_health.get(image_id),
        )
        if tmpfs:
            c.attrs["HostConfig"] = {"Tmpfs": tmpfs}
        c.run_kwargs = dict(kwargs, image=image)
        self.client._containers.append(c)
        return c


class FakeImage:
    def __init__(self, image_id: str):
        self.id = image_id


class FakeImages:
    def __init__(self, client: "FakeDockerClient"):
        self.client = client

    def get(self, ref: str) -> FakeImage:
        self.client._check()
        if ref in self.client.image_ids:
            return FakeImage(self.client.image_ids[ref])
        if ref in self.client.known_ids:
            return FakeImage(ref)
        raise ImageNotFound(f"No such image: {ref}")


class FakeDockerClient:
    """Just enough of docker.DockerClient for RuntimeInspector."""

    def __init__(self) -> None:
        self._containers: list[FakeContainer] = []
        self.containers = FakeContainers(self)
        self.images = FakeImages(self)
        self.calls: list[tuple[str, Any]] = []
        self.image_ids: dict[str, str] = {}
        # Untagged images stay addressable by ID after a tag moves.
        self.known_ids: set[str] = set()
        self.image_health: dict[str, FakeHealth] = {}
        self.down = False
        self.reject_create = False

    def _check(self) -> None:
        if self.down:
            raise DockerException("Error while fetching server API version")

    def ping(self) -> bool:
        self._check()
        return True

    def add_image(self, image: str, image_id: str, health: FakeHealth | None = None) -> None:
        self.image_ids[image] = image_id
        self.known_ids.add(image_id)
        if health is not None:
            self.image_health[image] = health
            self.image_health[image_id] = health

    def add_container(self, name: str, image: str, health: FakeHealth | None = None, **kw: Any) -> FakeContainer:
        if image not in self.image_ids:
            self.add_image(image, digest(str(len(self.image_ids) % 10)))
        c = FakeContainer(self, name, image, self.image_ids[image], health=health or self.image_health.get(image), **kw)
        self._containers.append(c)
        return c

    def by_name(self, name: str) -> FakeContainer | None:
        return next((c for c in self._containers if c.name == name), None)

    def mutations(self) -> list[tuple[str, Any]]:
        return [c for c in self.calls if c[0] in {"run", "stop", "remove"}]


class Sleeper:
    def __init__(self) -> None:
        self.calls: list[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture(autouse=True)
def _events_reset():
    events.clear_events()
    events.set_level("debug")
    yield
    events.clear_events()
    events.set_level("info")


@pytest.fixture
def docker_client() -> FakeDockerClient:
    return FakeDockerClient()


@pytest.fixture
def inspector(docker_client: FakeDockerClient) -> RuntimeInspector:
    return RuntimeInspector(client=docker_client, selection="oldest")


@pytest.fixture
def sleeper() -> Sleeper:
    return Sleeper()


@pytest.fixture
def write_config(tmp_path):
    path = tmp_path / "config.yaml"

    def _write(services: dict[str, Any] | None = None, **manager: Any) -> ConfigStore:
        doc = {
            "manager": {"check_interval": 60, "log_level": "debug", "docker_network": "coolify", **manager},
            "services": services or {},
        }
        path.write_text(yaml.safe_dump(doc, sort_keys=False))
        return ConfigStore(str(path))

    return _write


@pytest.fixture
def make_reconciler(inspector: RuntimeInspector, sleeper: Sleeper):
    def _make(store: ConfigStore, retries: int = 1) -> Reconciler:
        probe = HealthProbe(inspector, timeout_s=1, retries=retries, retry_delay_s=0.5, sleep=sleeper)
        synth = ReplicaSynthesizer(inspector, settle_delay_s=1.0, sleep=sleeper)
        return Reconciler(
            store,
            inspector=inspector,
            probe=probe,
            synthesizer=synth,
            post_create_delay_s=2.0,
            replica_prefix="failover-",
            sleep=sleeper,
        )

    return _make


def service_entry(pattern: str = "api-", version_path: str | None = ".version", enabled: bool = True, port: int = 3000) -> dict[str, Any]:
    entry: dict[str, Any] = {
        "enabled": enabled,
        "primary_pattern": pattern,
        "health_endpoint": "/health",
        "health_port": port,
    }
    if version_path is not None:
        entry["version_path"] = version_path
    return entry
