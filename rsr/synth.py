from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable

from .docker_ops import REPLICA_LABEL, ContainerImageSpec, ContainerRef, RuntimeInspector, short_digest
from .errors import InspectionError, SynthesisError
from .events import log_event
from .settings import settings


NO_MOUNTS_WARNING = "No volumes detected on primary: shared state (sessions, local files) will not survive failover."


@dataclass(frozen=True)
class SynthesisResult:
    replica: ContainerRef
    spec: ContainerImageSpec
    labels: dict[str, str] = field(default_factory=dict)
    warnings: tuple[str, ...] = ()


class ReplicaSynthesizer:
    """Creates a replica as a clone of the primary's runtime configuration."""

    def __init__(
        self,
        inspector: RuntimeInspector,
        settle_delay_s: float | None = None,
        unmanaged_label: str | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.inspector = inspector
        self.settle_delay_s = settings.settle_delay_s if settle_delay_s is None else settle_delay_s
        self.unmanaged_label = unmanaged_label or settings.unmanaged_label
        self._sleep = sleep

    def replica_labels(self, service: str) -> dict[str, str]:
        """Labels applied on top of the primary's so the platform leaves the replica alone."""
        return {self.unmanaged_label: "false", REPLICA_LABEL: service}

    def create_replica(self, primary: ContainerRef, replica_name: str, network: str, service: str | None = None) -> SynthesisResult:
        service = service or replica_name
        try:
            spec = self.inspector.snapshot(primary)
        except InspectionError as e:
            raise SynthesisError(f"Cannot read primary {primary.name}: {e}") from e
        spec = self._pin_image(spec, replica_name, service)

        warnings: list[str] = []
        if spec.mounts:
            log_event(
                "INFO",
                f"Replica {replica_name} shares {len(spec.mounts)} mount(s) with primary {primary.name}",
                service_name=service,
            )
        else:
            warnings.append(NO_MOUNTS_WARNING)
            log_event("WARN", NO_MOUNTS_WARNING, service_name=service)

        overlay = self.replica_labels(service)
        log_event("DEBUG", f"Creating {replica_name} from {spec.image} on network {network}", service_name=service)
        ref = self.inspector.create(spec, replica_name, network, extra_labels=overlay)
        log_event("INFO", f"Created replica {replica_name} ({ref.id[:12]})", service_name=service)

        labels = spec.label_dict()
        labels.update(overlay)
        return SynthesisResult(replica=ref, spec=spec, labels=labels, warnings=tuple(warnings))

    def _pin_image(self, spec: ContainerImageSpec, replica_name: str, service: str) -> ContainerImageSpec:
        """Use the primary's image ID when its tag no longer points at what the primary runs."""
        if not spec.image_id:
            return spec
        try:
            current = self.inspector.resolve_image(spec.image)
        except InspectionError:
            current = None
        if current == spec.image_id:
            return spec
        log_event(
            "WARN",
            f"Image {spec.image} now resolves to {short_digest(current)}, creating {replica_name} "
            f"from the primary's image {short_digest(spec.image_id)}",
            service_name=service,
        )
        return spec.pinned()

    def recreate(self, primary: ContainerRef, replica_name: str, network: str, service: str | None = None) -> SynthesisResult:
        """Stop and remove any existing replica, wait briefly, then create a fresh one."""
        service = service or replica_name
        try:
            self.inspector.stop(replica_name)
        except InspectionError as e:
            log_event("WARN", f"Stopping {replica_name} failed: {e}", service_name=service)
        try:
            self.inspector.remove(replica_name)
        except InspectionError as e:
            log_event("WARN", f"Removing {replica_name} failed: {e}", service_name=service)

        # Let the runtime release the name before it is reused.
        if self.settle_delay_s > 0:
            self._sleep(self.settle_delay_s)
        return self.create_replica(primary, replica_name, network, service=service)
