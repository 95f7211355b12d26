from __future__ import annotations

import re
from dataclasses import dataclass, replace
from typing import Any, Iterable, Iterator

import docker
from docker.errors import APIError, DockerException, ImageNotFound, NotFound

from .errors import InspectionError, ProbeError, SynthesisError
from .settings import settings


# Marks containers created by the reconciler; they are never treated as primaries.
REPLICA_LABEL = "rsr.replica"

SELECTION_POLICIES = ("oldest", "newest", "name")


@dataclass(frozen=True)
class ContainerRef:
    id: str
    name: str


@dataclass(frozen=True)
class MountSpec:
    source: str
    destination: str
    # For tmpfs mounts: the tmpfs options ("rw,size=64m"), possibly empty.
    mode: str
    tmpfs: bool = False

    def as_bind(self) -> str:
        return f"{self.source}:{self.destination}:{self.mode}"


@dataclass(frozen=True)
class ContainerImageSpec:
    """Everything copied from a primary when its replica is synthesized."""

    image: str
    env: tuple[str, ...] = ()
    labels: tuple[tuple[str, str], ...] = ()
    mounts: tuple[MountSpec, ...] = ()
    # Image ID (sha256:...) the primary actually runs; `image` may be a tag that has moved since.
    image_id: str | None = None

    def label_dict(self) -> dict[str, str]:
        return dict(self.labels)

    def without_labels(self, keys: Iterable[str]) -> "ContainerImageSpec":
        drop = set(keys)
        return replace(self, labels=tuple((k, v) for k, v in self.labels if k not in drop))

    def pinned(self) -> "ContainerImageSpec":
        """Same spec, referencing the primary's image by ID instead of by tag."""
        if not self.image_id:
            return self
        return replace(self, image=self.image_id)


def short_digest(digest: str | None) -> str:
    if not digest:
        return "unknown"
    _, _, hexpart = digest.partition(":")
    return f"{(hexpart or digest)[:12]}..."


def _created_key(created: Any) -> tuple:
    """Sort key for docker 'Created' values (RFC3339 with up to nanosecond precision, or epoch)."""
    if isinstance(created, (int, float)):
        return (float(created), "")
    text = str(created or "")
    m = re.match(r"^(.*?T\d{2}:\d{2}:\d{2})(?:\.(\d+))?(.*)$", text)
    if not m:
        return (0.0, text)
    frac = (m.group(2) or "").ljust(9, "0")[:9]
    return (0.0, f"{m.group(1)}.{frac}{m.group(3)}")


def _mount_from_attrs(m: dict[str, Any], tmpfs_opts: dict[str, str]) -> MountSpec:
    kind = m.get("Type") or ""
    destination = str(m.get("Destination", ""))
    if kind == "tmpfs":
        return MountSpec(source="", destination=destination, mode=tmpfs_opts.get(destination, ""), tmpfs=True)
    # Named volumes are re-attached by name; binds by host path.
    source = m.get("Name") if kind == "volume" and m.get("Name") else m.get("Source", "")
    mode = m.get("Mode") or ("rw" if m.get("RW", True) else "ro")
    if not m.get("RW", True) and "ro" not in mode.split(","):
        mode = f"ro,{mode}"
    return MountSpec(source=str(source), destination=destination, mode=mode)


def _mounts_from_attrs(attrs: dict[str, Any]) -> tuple[MountSpec, ...]:
    # `--tmpfs` mounts only show up in HostConfig.Tmpfs, `--mount type=tmpfs` ones in Mounts too.
    tmpfs_opts = dict((attrs.get("HostConfig") or {}).get("Tmpfs") or {})
    mounts = [_mount_from_attrs(m, tmpfs_opts) for m in attrs.get("Mounts") or ()]
    seen = {m.destination for m in mounts}
    for dest, opts in tmpfs_opts.items():
        if dest not in seen:
            mounts.append(MountSpec(source="", destination=dest, mode=opts or "", tmpfs=True))
    return tuple(mounts)



class RuntimeInspector:
    """Typed wrapper around the Docker Engine API.

    Name lookups are exact; primary discovery is a regex search over the
    names of running containers. stop() and remove() treat a missing target
    as success.
    """

    def __init__(self, client: Any | None = None, selection: str | None = None):
        self._client = client
        self.selection = selection or settings.primary_selection
        if self.selection not in SELECTION_POLICIES:
            raise ValueError(f"Unknown primary selection policy '{self.selection}'. Use one of: {', '.join(SELECTION_POLICIES)}.")

    @property
    def client(self) -> Any:
        if self._client is None:
            try:
                self._client = docker.from_env()
            except DockerException as e:
                raise InspectionError(f"Cannot connect to Docker daemon: {e}") from e
        return self._client

    def available(self) -> bool:
        try:
            self.client.ping()
            return True
        except (DockerException, InspectionError):
            return False

    def _get(self, name_or_id: str) -> Any | None:
        try:
            cont = self.client.containers.get(name_or_id)
        except NotFound:
            return None
        except DockerException as e:
            raise InspectionError(f"Cannot inspect container '{name_or_id}': {e}") from e
        return cont

    def _get_named(self, name: str) -> Any | None:
        cont = self._get(name)
        # containers.get() also resolves ID prefixes; only accept an exact name.
        if cont is not None and cont.name != name:
            return None
        return cont

    def find_primary(self, pattern: str, selection: str | None = None) -> ContainerRef | None:
        """Pick one running container whose name matches `pattern`.

        Policy (deterministic): 'oldest' by creation time (default), 'newest',
        or 'name' (lexicographic); ties break on name.
        """
        policy = selection or self.selection
        try:
            running = self.client.containers.list(filters={"name": pattern})
        except DockerException as e:
            raise InspectionError(f"Cannot list containers: {e}") from e

        rx = re.compile(pattern)
        candidates = []
        for c in running:
            labels = (c.attrs.get("Config") or {}).get("Labels") or {}
            if REPLICA_LABEL in labels:
                continue
            if c.status != "running" or not rx.search(c.name):
                continue
            candidates.append(c)
        if not candidates:
            return None

        candidates.sort(key=lambda c: c.name)
        if policy != "name":
            # Stable sort keeps the name order among equal creation times.
            candidates.sort(key=lambda c: _created_key(c.attrs.get("Created")), reverse=(policy == "newest"))
        chosen = candidates[0]
        return ContainerRef(id=chosen.id, name=chosen.name)

    def exists(self, name: str) -> bool:
        return self._get_named(name) is not None

    def is_running(self, name: str) -> bool:
        cont = self._get_named(name)
        if cont is None:
            return False
        try:
            cont.reload()
        except NotFound:
            return False
        except DockerException as e:
            raise InspectionError(f"Cannot inspect container '{name}': {e}") from e
        return cont.status == "running"

    def snapshot(self, ref: ContainerRef) -> ContainerImageSpec:
        cont = self._get(ref.id)
        if cont is None:
            raise InspectionError(f"Container {ref.name} ({ref.id[:12]}) vanished.")
        config = cont.attrs.get("Config") or {}
        image = config.get("Image")
        if not image:
            raise InspectionError(f"Cannot read image of container {ref.name}.")
        return ContainerImageSpec(
            image=image,
            env=tuple(config.get("Env") or ()),
            labels=tuple((config.get("Labels") or {}).items()),
            mounts=_mounts_from_attrs(cont.attrs),
            image_id=cont.attrs.get("Image") or None,
        )

    def image_digest(self, name: str) -> str | None:
        """Image ID (sha256:...) the container was created from."""
        cont = self._get_named(name)
        if cont is None:
            return None
        return cont.attrs.get("Image") or None

    def resolve_image(self, ref: str) -> str | None:
        """Image ID a tag or ID currently resolves to locally, or None if unknown."""
        try:
            return self.client.images.get(ref).id
        except ImageNotFound:
            return None
        except DockerException as e:
            raise InspectionError(f"Cannot inspect image '{ref}': {e}") from e

    def logs(self, name: str, tail: int = 100, follow: bool = False) -> bytes | Iterator[bytes] | None:
        """stdout+stderr of a container; a chunk iterator when following. None if it does not exist."""
        cont = self._get_named(name)
        if cont is None:
            return None
        try:
            return cont.logs(stdout=True, stderr=True, tail=tail, stream=follow, follow=follow)
        except NotFound:
            return None
        except DockerException as e:
            raise InspectionError(f"Cannot read logs of '{name}': {e}") from e

    def exec_http(self, name: str, port: int, endpoint: str, timeout_s: float) -> tuple[int, bytes]:
        """GET http://localhost:<port><endpoint> from inside the container.

        Runs curl in the container's own network namespace so no proxy or DNS
        sits between the reconciler and the service.
        """
        cont = self._get_named(name)
        if cont is None:
            raise ProbeError(f"Container '{name}' not found.")
        t = str(max(1, int(round(timeout_s))))
        url = f"http://localhost:{int(port)}{endpoint}"
        cmd = ["curl", "-s", "--max-time", t, "--connect-timeout", t, "-w", "\n%{http_code}", url]
        try:
            result = cont.exec_run(cmd, stdout=True, stderr=False)
        except DockerException as e:
            raise ProbeError(f"exec in '{name}' failed: {e}") from e

        exit_code, output = result.exit_code, result.output or b""
        if exit_code != 0:
            raise ProbeError(f"curl in '{name}' exited with {exit_code}")
        body, _, code = output.rpartition(b"\n")
        try:
            status = int(code.strip())
        except ValueError as e:
            raise ProbeError(f"Unexpected curl output from '{name}'") from e
        if status == 0:
            raise ProbeError(f"No response from {url} in '{name}'")
        return status, body

    def stop(self, name: str, timeout_s: int | None = None) -> bool:
        """Stop the container if it is running. Returns True if a stop was issued."""
        cont = self._get_named(name)
        if cont is None:
            return False
        try:
            cont.reload()
            if cont.status != "running":
                return False
            cont.stop(timeout=settings.stop_timeout_s if timeout_s is None else timeout_s)
            return True
        except NotFound:
            return False
        except DockerException as e:
            raise InspectionError(f"Cannot stop container '{name}': {e}") from e

    def remove(self, name: str) -> bool:
        """Force-remove the container. Returns True if one was removed."""
        cont = self._get_named(name)
        if cont is None:
            return False
        try:
            cont.remove(force=True)
            return True
        except NotFound:
            return False
        except DockerException as e:
            raise InspectionError(f"Cannot remove container '{name}': {e}") from e

    def create(
        self,
        spec: ContainerImageSpec,
        name: str,
        network: str,
        extra_labels: dict[str, str] | None = None,
    ) -> ContainerRef:
        """Create and start a detached container from a snapshot."""
        labels = spec.label_dict()
        labels.update(extra_labels or {})
        kwargs: dict[str, Any] = {
            "detach": True,
            "name": name,
            "environment": list(spec.env),
            "labels": labels,
            "volumes": [m.as_bind() for m in spec.mounts if not m.tmpfs],
            "network": network,
            "restart_policy": {"Name": "always"},
        }
        tmpfs = {m.destination: m.mode for m in spec.mounts if m.tmpfs}
        if tmpfs:
            kwargs["tmpfs"] = tmpfs
        try:
            container = self.client.containers.run(spec.image, **kwargs)
        except ImageNotFound as e:
            raise SynthesisError(f"Image {spec.image} not available: {e}") from e
        except (APIError, DockerException) as e:
            raise SynthesisError(f"Runtime rejected creation of '{name}': {e}") from e
        return ContainerRef(id=container.id, name=name)
