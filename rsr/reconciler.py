from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from enum import Enum
from threading import Event, Thread
from typing import Callable, Iterator

from . import events
from .config import ConfigStore, FailoverConfig, ManagerConfig, ServiceSpec
from .docker_ops import ContainerRef, RuntimeInspector, short_digest
from .errors import ConfigError, InspectionError, RSRError, SynthesisError
from .events import log_event
from .health import ABSENT, HealthProbe, HealthResult, Version, is_absent, version_or_none, versions_equal
from .runtime import RuntimeState, ServiceStatus
from .settings import settings
from .synth import ReplicaSynthesizer


class SyncAction(str, Enum):
    NO_ACTION = "NoActionNeeded"
    CREATE_MISSING = "CreateMissing"
    RECREATE_STALE = "RecreateStale"


class ServiceState(str, Enum):
    PRIMARY_UNAVAILABLE = "PrimaryUnavailable"
    REPLICA_MISSING = "ReplicaMissing"
    REPLICA_PRESENT = "ReplicaPresent"


METHOD_VERSION = "version"
METHOD_IMAGE = "image-digest"


@dataclass(frozen=True)
class SyncDecision:
    action: SyncAction
    reason: str
    method: str | None = None

    @property
    def needs_sync(self) -> bool:
        return self.action is not SyncAction.NO_ACTION


@dataclass(frozen=True)
class Comparison:
    in_sync: bool
    method: str
    detail: str


def compare(
    version_path: str | None,
    primary_version: Version,
    replica_version: Version,
    primary_image: str | None,
    replica_image: str | None,
) -> Comparison:
    """Version equality when both sides report one, otherwise image identity."""
    if version_path and not is_absent(primary_version) and not is_absent(replica_version):
        if versions_equal(primary_version, replica_version):
            return Comparison(True, METHOD_VERSION, f"version {primary_version}")
        return Comparison(False, METHOD_VERSION, f"version mismatch ({replica_version} -> {primary_version})")

    if primary_image and replica_image and primary_image == replica_image:
        return Comparison(True, METHOD_IMAGE, f"same image {short_digest(primary_image)}")
    return Comparison(
        False,
        METHOD_IMAGE,
        f"image mismatch ({short_digest(replica_image)} -> {short_digest(primary_image)})",
    )


def decide(
    primary_found: bool,
    primary_healthy: bool,
    replica_exists: bool,
    version_path: str | None = None,
    primary_version: Version = ABSENT,
    replica_version: Version = ABSENT,
    primary_image: str | None = None,
    replica_image: str | None = None,
) -> SyncDecision:
    """Pure decision over one cycle's observations of a service."""
    if not primary_found:
        return SyncDecision(SyncAction.NO_ACTION, "primary not found")
    if not primary_healthy:
        return SyncDecision(SyncAction.NO_ACTION, "primary unhealthy (deployment in progress?)")
    if not replica_exists:
        return SyncDecision(SyncAction.CREATE_MISSING, "failover doesn't exist")

    cmp = compare(version_path, primary_version, replica_version, primary_image, replica_image)
    if cmp.in_sync:
        return SyncDecision(SyncAction.NO_ACTION, f"in sync ({cmp.detail})", cmp.method)
    return SyncDecision(SyncAction.RECREATE_STALE, cmp.detail, cmp.method)


@dataclass
class ServiceOutcome:
    service: str
    state: ServiceState | None = None
    decision: SyncDecision | None = None
    synced: bool = False
    post_check: HealthResult | None = None
    skipped: str | None = None
    error: str | None = None


@dataclass
class CycleReport:
    outcomes: list[ServiceOutcome] = field(default_factory=list)
    elapsed_s: float = 0.0
    next_sleep_s: float = 0.0
    overran: bool = False
    interrupted: bool = False


def next_sleep(interval_s: float, elapsed_s: float) -> tuple[float, bool]:
    """Remaining idle time for a cycle; (0.0, True) when the cycle overran."""
    remaining = float(interval_s) - float(elapsed_s)
    if remaining < 0:
        return 0.0, True
    return remaining, False


@dataclass
class LoopControl:
    """Explicit context for the scheduling loop.

    Stop requests are only honoured between services, never inside one.
    """

    interval_s: float = 60.0
    stop_event: Event = field(default_factory=Event)
    clock: Callable[[], float] = time.monotonic
    cycles: int = 0
    max_cycles: int | None = None

    def request_stop(self) -> None:
        self.stop_event.set()

    @property
    def stop_requested(self) -> bool:
        return self.stop_event.is_set()

    def wait(self, seconds: float) -> bool:
        """Idle until the next cycle; returns True if stopped meanwhile."""
        return self.stop_event.wait(max(0.0, seconds))


class Reconciler:
    """Keeps each enabled service's failover replica in sync with its primary."""

    def __init__(
        self,
        store: ConfigStore,
        inspector: RuntimeInspector | None = None,
        probe: HealthProbe | None = None,
        synthesizer: ReplicaSynthesizer | None = None,
        runtime: RuntimeState | None = None,
        post_create_delay_s: float | None = None,
        replica_prefix: str | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.inspector = inspector or RuntimeInspector()
        self.probe = probe or HealthProbe(self.inspector, sleep=sleep)
        self.synthesizer = synthesizer or ReplicaSynthesizer(self.inspector, sleep=sleep)
        self.runtime = runtime or RuntimeState()
        self.post_create_delay_s = settings.post_create_delay_s if post_create_delay_s is None else post_create_delay_s
        self.replica_prefix = settings.replica_prefix if replica_prefix is None else replica_prefix
        self._sleep = sleep
        self._config: FailoverConfig | None = None
        self.control = LoopControl()
        self._thr: Thread | None = None

    # -- lifecycle -----------------------------------------------------------

    def preflight(self) -> FailoverConfig:
        """Startup checks; failures here are fatal to the whole process."""
        if not self.inspector.available():
            raise InspectionError("Docker not available (cannot reach the daemon).")
        cfg = self.store.load()
        self._config = cfg
        events.set_level(cfg.manager.log_level)
        self.control.interval_s = cfg.manager.check_interval
        log_event("INFO", f"Configuration loaded from {self.store.path}")
        log_event("INFO", f"  Check interval: {cfg.manager.check_interval}s")
        log_event("INFO", f"  Log level: {cfg.manager.log_level}")
        log_event("INFO", f"  Docker network: {cfg.manager.docker_network}")
        return cfg

    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            return
        self.control = LoopControl(interval_s=self.control.interval_s)
        self._thr = Thread(target=self.run, args=(self.control,), name="rsr-reconciler", daemon=True)
        self._thr.start()

    def stop(self) -> None:
        self.control.request_stop()

    def join(self, timeout: float | None = None) -> None:
        if self._thr:
            self._thr.join(timeout)

    def run(self, control: LoopControl | None = None) -> None:
        control = control or self.control
        log_event("INFO", "Starting main processing loop")
        while not control.stop_requested:
            try:
                report = self.run_cycle(control)
                wait_s = report.next_sleep_s
            except Exception as e:
                log_event("ERROR", f"Reconcile cycle failed: {type(e).__name__}: {e}")
                wait_s = control.interval_s
            control.cycles += 1
            if control.max_cycles is not None and control.cycles >= control.max_cycles:
                break
            if control.stop_requested:
                break
            if wait_s > 0:
                log_event("DEBUG", f"Sleeping for {wait_s:.1f}s until next check")
                control.wait(wait_s)
        log_event("INFO", "Main loop stopped")

    # -- configuration -------------------------------------------------------

    def current_config(self) -> FailoverConfig:
        """Fresh read of the store; falls back to the last good read."""
        try:
            cfg = self.store.load()
        except ConfigError as e:
            if self._config is None:
                raise
            log_event("ERROR", f"Config reload failed, keeping previous configuration: {e}")
            return self._config
        self._config = cfg
        return cfg

    def replica_name(self, service: str) -> str:
        return f"{self.replica_prefix}{service}"

    # -- one cycle -----------------------------------------------------------

    def run_cycle(self, control: LoopControl) -> CycleReport:
        report = CycleReport()
        start = control.clock()
        log_event("DEBUG", "Starting check cycle")

        cfg = self.current_config()
        events.set_level(cfg.manager.log_level)
        control.interval_s = cfg.manager.check_interval

        enabled = [n for n in cfg.order if n in cfg.invalid or (n in cfg.services and cfg.services[n].enabled)]
        if not enabled:
            log_event("DEBUG", "No enabled services found")
        else:
            log_event("INFO", f"Checking services: {' '.join(enabled)}")

        for name in cfg.order:
            if control.stop_requested:
                report.interrupted = True
                log_event("INFO", "Stop requested, ending cycle before remaining services")
                break
            entry = cfg.entry(name)
            if isinstance(entry, ConfigError):
                log_event("WARN", f"Skipping service: {entry}", service_name=name)
                report.outcomes.append(ServiceOutcome(service=name, skipped="invalid", error=str(entry)))
                continue
            if entry is None or not entry.enabled:
                log_event("DEBUG", f"Service {name} is disabled, skipping", service_name=name)
                report.outcomes.append(ServiceOutcome(service=name, skipped="disabled"))
                continue
            report.outcomes.append(self.process_service(entry, cfg.manager))

        report.elapsed_s = control.clock() - start
        report.next_sleep_s, report.overran = next_sleep(control.interval_s, report.elapsed_s)
        log_event("DEBUG", f"Check cycle completed in {report.elapsed_s:.1f}s")
        if report.overran:
            log_event(
                "WARN",
                f"Check cycle took longer than interval ({report.elapsed_s:.1f}s > {control.interval_s:g}s)",
            )
        return report

    def process_service(self, spec: ServiceSpec, manager: ManagerConfig) -> ServiceOutcome:
        """Evaluate and act on one service; errors never propagate past here."""
        with self.runtime.service_lock(spec.name):
            try:
                return self._process(spec, manager)
            except RSRError as e:
                log_event("WARN", f"Failed to process service: {e}", service_name=spec.name)
                self.runtime.set_status(self.runtime.last_known(spec.name, str(e)))
                return ServiceOutcome(service=spec.name, error=str(e))
            except Exception as e:
                log_event("ERROR", f"Unexpected failure processing service: {type(e).__name__}: {e}", service_name=spec.name)
                return ServiceOutcome(service=spec.name, error=f"{type(e).__name__}: {e}")

    def _track_health(self, service: str, role: str, name: str, healthy: bool) -> None:
        prev = self.runtime.mark_health(name, healthy)
        if prev and not healthy:
            log_event("WARN", f"{role} {name} became unhealthy", service_name=service)
        elif prev is False and healthy:
            log_event("INFO", f"{role} {name} recovered", service_name=service)

    def _process(self, spec: ServiceSpec, manager: ManagerConfig) -> ServiceOutcome:
        service = spec.name
        outcome = ServiceOutcome(service=service)
        replica = self.replica_name(service)
        log_event("DEBUG", f"Processing service: {service}", service_name=service)

        primary = self.inspector.find_primary(spec.primary_pattern)
        if primary is None:
            log_event("WARN", f"Primary container not found (pattern: {spec.primary_pattern})", service_name=service)
            outcome.state = ServiceState.PRIMARY_UNAVAILABLE
            outcome.decision = decide(primary_found=False, primary_healthy=False, replica_exists=False)
            self.runtime.set_status(ServiceStatus(service=service, replica_name=replica))
            return outcome
        log_event("DEBUG", f"Found primary: {primary.name} ({primary.id[:12]})", service_name=service)

        primary_ok = self.probe.check_health_with_retry(primary.name, spec.health_endpoint, spec.health_port)
        self._track_health(service, "Primary", primary.name, primary_ok)
        if not primary_ok:
            log_event("INFO", f"Primary {primary.name} is unhealthy (deployment in progress?), skipping sync", service_name=service)
            outcome.state = ServiceState.PRIMARY_UNAVAILABLE
            outcome.decision = decide(primary_found=True, primary_healthy=False, replica_exists=False)
            self.runtime.set_status(
                ServiceStatus(service=service, primary_found=True, primary_name=primary.name, replica_name=replica)
            )
            return outcome

        primary_version: Version = ABSENT
        if spec.version_path:
            primary_version = self.probe.read_version(primary.name, spec.health_endpoint, spec.health_port, spec.version_path)
        log_event("DEBUG", f"Primary {primary.name} is healthy (version: {version_or_none(primary_version) or 'unknown'})", service_name=service)

        replica_result: HealthResult | None = None
        if not self.inspector.exists(replica):
            log_event("INFO", f"Failover container {replica} does not exist, will create", service_name=service)
            outcome.state = ServiceState.REPLICA_MISSING
            decision = decide(primary_found=True, primary_healthy=True, replica_exists=False)
        else:
            outcome.state = ServiceState.REPLICA_PRESENT
            if not self.inspector.is_running(replica):
                log_event("WARN", f"Failover container {replica} exists but is not running", service_name=service)
            replica_result = self.probe.probe(replica, spec.health_endpoint, spec.health_port, spec.version_path)
            self._track_health(service, "Failover", replica, replica_result.healthy)
            if spec.version_path and (is_absent(primary_version) or is_absent(replica_result.version)):
                log_event(
                    "DEBUG",
                    f"Version comparison not possible (primary: {version_or_none(primary_version)}, "
                    f"failover: {version_or_none(replica_result.version)}), falling back to image comparison",
                    service_name=service,
                )
            decision = decide(
                primary_found=True,
                primary_healthy=True,
                replica_exists=True,
                version_path=spec.version_path,
                primary_version=primary_version,
                replica_version=replica_result.version,
                primary_image=self.inspector.image_digest(primary.name),
                replica_image=self.inspector.image_digest(replica),
            )
        outcome.decision = decision

        status = ServiceStatus(
            service=service,
            primary_found=True,
            primary_name=primary.name,
            primary_healthy=True,
            primary_version=version_or_none(primary_version),
            replica_found=replica_result is not None,
            replica_name=replica,
            replica_healthy=bool(replica_result and replica_result.healthy),
            replica_version=version_or_none(replica_result.version) if replica_result else None,
            in_sync=not decision.needs_sync,
            comparison=decision.method,
        )

        if not decision.needs_sync:
            log_event("DEBUG", f"Service {service} is {decision.reason}", service_name=service)
            self.runtime.set_status(status)
            return outcome

        self._sync(spec, manager, primary, decision, outcome, status)
        return outcome

    def _sync(
        self,
        spec: ServiceSpec,
        manager: ManagerConfig,
        primary: ContainerRef,
        decision: SyncDecision,
        outcome: ServiceOutcome,
        status: ServiceStatus,
    ) -> None:
        service = spec.name
        replica = self.replica_name(service)
        log_event("INFO", f"Syncing failover for {service}: {decision.reason}", service_name=service)
        log_event("INFO", f"  Primary: {primary.name}", service_name=service)
        log_event("INFO", f"  Failover: {replica}", service_name=service)

        try:
            if decision.action is SyncAction.CREATE_MISSING:
                self.synthesizer.create_replica(primary, replica, manager.docker_network, service=service)
            else:
                self.synthesizer.recreate(primary, replica, manager.docker_network, service=service)
        except SynthesisError as e:
            log_event("ERROR", f"Failed to recreate failover for {service}: {e}", service_name=service)
            outcome.error = str(e)
            self.runtime.set_status(replace(status, in_sync=False, error=str(e)))
            return

        outcome.synced = True
        self.runtime.forget(replica)
        log_event("INFO", f"Failover sync complete for {service}", service_name=service)

        # Observability only: a replica that is not healthy yet is re-evaluated next cycle.
        if self.post_create_delay_s > 0:
            self._sleep(self.post_create_delay_s)
        check = self.probe.probe(replica, spec.health_endpoint, spec.health_port, spec.version_path)
        outcome.post_check = check
        self.runtime.mark_health(replica, check.healthy)
        if check.healthy:
            msg = f"Failover {replica} is healthy"
            if not is_absent(check.version):
                msg += f" (version: {check.version})"
            log_event("INFO", msg, service_name=service)
        else:
            log_event("WARN", f"Failover {replica} created but not healthy yet (may need more time)", service_name=service)

        self.runtime.set_status(
            replace(
                status,
                replica_found=True,
                replica_healthy=check.healthy,
                replica_version=version_or_none(check.version),
                in_sync=True,
            )
        )

    # -- operator surface ----------------------------------------------------

    def _lookup(self, service: str) -> ServiceSpec | ConfigError:
        cfg = self.current_config()
        entry = cfg.entry(service)
        if entry is None:
            raise LookupError(f"Service '{service}' not found in configuration")
        return entry

    def status(self, service: str) -> ServiceStatus:
        """Live read-only status; falls back to the last-known status on failure."""
        entry = self._lookup(service)
        if isinstance(entry, ConfigError):
            return self.runtime.last_known(service, str(entry))
        try:
            return self._live_status(entry)
        except RSRError as e:
            return self.runtime.last_known(service, str(e))

    def _live_status(self, spec: ServiceSpec) -> ServiceStatus:
        replica = self.replica_name(spec.name)
        primary = self.inspector.find_primary(spec.primary_pattern)
        primary_result = None
        if primary is not None:
            primary_result = self.probe.probe(primary.name, spec.health_endpoint, spec.health_port, spec.version_path)

        replica_result = None
        if self.inspector.exists(replica):
            replica_result = self.probe.probe(replica, spec.health_endpoint, spec.health_port, spec.version_path)

        in_sync = False
        comparison = None
        if primary is not None and replica_result is not None and primary_result is not None:
            cmp = compare(
                spec.version_path,
                primary_result.version,
                replica_result.version,
                self.inspector.image_digest(primary.name),
                self.inspector.image_digest(replica),
            )
            in_sync, comparison = cmp.in_sync, cmp.method

        return ServiceStatus(
            service=spec.name,
            primary_found=primary is not None,
            primary_name=primary.name if primary else None,
            primary_healthy=bool(primary_result and primary_result.healthy),
            primary_version=version_or_none(primary_result.version) if primary_result else None,
            replica_found=replica_result is not None,
            replica_name=replica,
            replica_healthy=bool(replica_result and replica_result.healthy),
            replica_version=version_or_none(replica_result.version) if replica_result else None,
            in_sync=in_sync,
            comparison=comparison,
        )

    def force_sync(self, service: str) -> bool:
        """Delete the replica so the next cycle recreates it. Returns True if one existed."""
        entry = self._lookup(service)
        if isinstance(entry, ConfigError):
            raise entry
        if not entry.enabled:
            raise ConfigError(f"Service '{service}' is not enabled", service=service)

        replica = self.replica_name(service)
        with self.runtime.service_lock(service):
            existed = self.inspector.exists(replica)
            self.inspector.stop(replica)
            self.inspector.remove(replica)
            self.runtime.forget(replica)
        if existed:
            log_event("INFO", f"Force sync: removed {replica}, next cycle will recreate it", service_name=service)
        else:
            log_event("INFO", f"Force sync: {replica} does not exist yet, next cycle will create it", service_name=service)
        return existed

    def logs(self, service: str, tail: int = 100, follow: bool = False) -> bytes | Iterator[bytes]:
        """Output of the service's failover container; a chunk iterator when following."""
        self._lookup(service)
        replica = self.replica_name(service)
        out = self.inspector.logs(replica, tail=tail, follow=follow)
        if out is None:
            raise LookupError(f"Failover container not found: {replica}")
        return out
