from __future__ import annotations

import itertools
import logging
import threading
import time
import uuid
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout, wait
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set

from pydantic import BaseModel, Field

from keelson.core.errors import (
    CursorExpired,
    InstanceStartFailure,
    KeelsonError,
    NotFound,
    StoreCorruption,
    UnresolvedReference,
    VersionPinned,
)
from keelson.core.models import (
    ChangeEvent,
    GenerationRef,
    Instance,
    InstanceHealth,
    ReconcilerSettings,
    Resource,
    ResourceKind,
    WorkloadPhase,
    WorkloadSpec,
)
from keelson.networking.service_registry import ServiceRegistry
from keelson.reconciler.phases import ACTIVE_PHASES, WorkloadEvent, transition_workload_phase
from keelson.runtime.container import ContainerRuntime, InstanceHandle
from keelson.store.materializer import MaterializedEnv, Materializer
from keelson.store.resource_store import ResourceStore, WatchSubscription

logger = logging.getLogger(__name__)

WATCHED_KINDS = (
    ResourceKind.WORKLOAD,
    ResourceKind.SECRET,
    ResourceKind.CONFIG_MAP,
    ResourceKind.SERVICE,
)

_LIVE = {InstanceHealth.PENDING, InstanceHealth.READY}


@dataclass
class ManagedInstance:
    record: Instance
    handle: InstanceHandle


@dataclass
class WorkloadStatus:
    """Reconciler-owned observed state of one workload."""

    name: str
    phase: WorkloadPhase = WorkloadPhase.PENDING
    generation: int = 0
    replicas: int = 0
    attempts: int = 0
    backoff_until: float = 0.0
    last_error: Optional[str] = None
    last_error_code: Optional[str] = None
    blocked_on: List[str] = field(default_factory=list)
    template: Optional[Dict[str, Any]] = None
    instances: "OrderedDict[str, ManagedInstance]" = field(default_factory=OrderedDict)

    def live(self) -> List[ManagedInstance]:
        return [m for m in self.instances.values() if m.record.health in _LIVE]


class WorkloadReport(BaseModel):
    """Read-only snapshot of a workload's reconciliation state."""

    name: str
    phase: WorkloadPhase
    generation: int
    replicas: int
    ready: int
    attempts: int
    last_error: Optional[str] = None
    last_error_code: Optional[str] = None
    blocked_on: List[str] = Field(default_factory=list)
    instances: List[Instance] = Field(default_factory=list)


class Reconciler:
    """
    Control loop driving workload instances toward their declared state.

    Work is serialized per workload name and runs in parallel across names.
    Failures are isolated per workload: they are recorded on its status and
    never stop the loop, except for store corruption which halts it.
    """

    def __init__(
        self,
        store: ResourceStore,
        runtime: ContainerRuntime,
        registry: ServiceRegistry,
        settings: Optional[ReconcilerSettings] = None,
        materializer: Optional[Materializer] = None,
        clock: Callable[[], float] = time.monotonic,
        on_error: Optional[Callable[[str, Exception], None]] = None,
    ) -> None:
        self.store = store
        self.runtime = runtime
        self.registry = registry
        self.settings = settings or ReconcilerSettings()
        self.materializer = materializer or Materializer(store)
        self.clock = clock
        self.on_error = on_error

        self.halted: Optional[StoreCorruption] = None

        self._statuses: Dict[str, WorkloadStatus] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()
        self._queue: "OrderedDict[str, None]" = OrderedDict()
        self._queue_lock = threading.Lock()
        self._sequence = itertools.count(1)
        self._subscription: Optional[WatchSubscription] = None
        self._pending_ack = 0

        self._workers = ThreadPoolExecutor(max_workers=self.settings.workers, thread_name_prefix="keelson-reconcile")
        self._stoppers = ThreadPoolExecutor(max_workers=self.settings.workers, thread_name_prefix="keelson-stop")

    # Queue and watch handling

    def enqueue(self, name: str) -> None:
        with self._queue_lock:
            self._queue[name] = None

    def queued(self) -> List[str]:
        with self._queue_lock:
            return list(self._queue)

    def sync_from_store(self) -> None:
        """Relist desired state: refresh services and queue every known workload."""
        self.registry.set_services(self.store.list(ResourceKind.SERVICE))
        for resource in self.store.list(ResourceKind.WORKLOAD):
            self.enqueue(resource.name)
        with self._guard:
            known = list(self._statuses)
        for name in known:
            self.enqueue(name)

    def resync(self) -> None:
        """Queue every tracked workload for a periodic health observation."""
        with self._guard:
            known = [name for name, status in self._statuses.items() if status.phase != WorkloadPhase.GONE]
        for name in known:
            self.enqueue(name)

    def process_events(self) -> List[ChangeEvent]:
        """Drain pending store events and queue the workloads they affect."""
        if self._subscription is None:
            self._subscription = self.store.watch(WATCHED_KINDS, cursor=self.store.revision)
            self.sync_from_store()
            return []

        try:
            events = self._subscription.poll()
        except CursorExpired as exc:
            logger.warning("Watch cursor expired (%s); relisting.", exc)
            self._subscription.cancel()
            self._subscription = None
            return self.process_events()

        services_changed = False
        for event in events:
            if event.kind == ResourceKind.WORKLOAD:
                self.enqueue(event.name)
            elif event.kind == ResourceKind.SERVICE:
                services_changed = True
            else:
                for name in self._consumers_of(event.kind, event.name):
                    self.enqueue(name)
            self._pending_ack = max(self._pending_ack, event.revision)

        if services_changed:
            self.registry.set_services(self.store.list(ResourceKind.SERVICE))
        return events

    def run_once(self) -> List[str]:
        """Run one pass: consume events, reconcile queued workloads, collect garbage."""
        if self.halted is not None:
            raise self.halted

        try:
            self.store.verify()
        except StoreCorruption as exc:
            self._halt(exc)

        self.process_events()

        with self._queue_lock:
            names = list(self._queue)
            self._queue.clear()

        self.reconcile_many(names)

        if self._subscription is not None and self._pending_ack:
            self._subscription.ack(self._pending_ack)

        self.store.collect_garbage()

        for name in names:
            status = self._statuses.get(name)
            if status is not None and status.phase == WorkloadPhase.SCALING:
                self.enqueue(name)

        return names

    def close(self) -> None:
        if self._subscription is not None:
            self._subscription.cancel()
        self._workers.shutdown(wait=True)
        self._stoppers.shutdown(wait=False)

    # Reconciliation

    def reconcile_many(self, names: List[str]) -> None:
        if len(names) <= 1 or self.settings.workers == 1:
            for name in names:
                self.reconcile(name)
        else:
            futures = [self._workers.submit(self.reconcile, name) for name in names]
            wait(futures)
            for future in futures:
                exc = future.exception()
                if isinstance(exc, StoreCorruption):
                    raise exc

        if self.halted is not None:
            raise self.halted

    def reconcile(self, name: str) -> Optional[WorkloadStatus]:
        """Reconcile one workload. Errors are recorded on its status, never raised."""
        with self._lock_for(name):
            try:
                return self._reconcile_locked(name)
            except StoreCorruption as exc:
                self._halt(exc)
            except Exception as exc:
                status = self._statuses.get(name)
                if status is not None:
                    self._set_error(status, exc)
                logger.error("Reconciliation of workload '%s' failed: %s", name, exc, exc_info=True)
                if self.on_error is not None:
                    self.on_error(name, exc)
                return status

    def retry(self, name: str) -> None:
        """Clear the retry budget of a Degraded workload and resume scaling."""
        with self._lock_for(name):
            status = self._statuses.get(name)
            if status is None:
                raise NotFound(ResourceKind.WORKLOAD.value, name)
            if status.phase == WorkloadPhase.DEGRADED:
                status.phase = transition_workload_phase(status.phase, WorkloadEvent.RETRY_REQUESTED)
            status.attempts = 0
            status.backoff_until = 0.0
            if status.last_error_code == InstanceStartFailure.error_code:
                self._clear_error(status)
        self.enqueue(name)

    def status(self, name: str) -> WorkloadReport:
        with self._lock_for(name):
            status = self._statuses.get(name)
            if status is None:
                raise NotFound(ResourceKind.WORKLOAD.value, name)
            return self._report(status)

    def statuses(self) -> List[WorkloadReport]:
        with self._guard:
            names = list(self._statuses)
        return [self.status(name) for name in names]

    def instances(self) -> List[Instance]:
        reports = self.statuses()
        return [instance for report in reports for instance in report.instances]

    def _reconcile_locked(self, name: str) -> Optional[WorkloadStatus]:
        try:
            resource: Optional[Resource] = self.store.get(ResourceKind.WORKLOAD, name)
        except NotFound:
            resource = None

        status = self._statuses.get(name)

        if resource is None:
            if status is None or status.phase == WorkloadPhase.GONE:
                return status
            self._terminate(status)
            return status

        if status is None:
            status = WorkloadStatus(name=name, generation=resource.generation)
            with self._guard:
                self._statuses[name] = status
        elif status.phase == WorkloadPhase.GONE:
            status.phase = transition_workload_phase(status.phase, WorkloadEvent.RECREATED)
            self._reset_generation(status, resource.generation)

        spec: WorkloadSpec = resource.typed_spec()
        template = spec.model_dump(mode="json", exclude={"replicas"})
        if resource.generation != status.generation:
            previous = status.generation
            self._reset_generation(status, resource.generation)
            if template == status.template:
                self._adopt_instances(status, previous)
            status.phase = transition_workload_phase(status.phase, WorkloadEvent.SPEC_CHANGED)
            logger.info("Workload '%s' moved to generation %d", name, resource.generation)
        status.replicas = spec.replicas
        status.template = template

        self._observe(status)
        self._converge(status, spec)
        return status

    def _observe(self, status: WorkloadStatus) -> None:
        failed: List[ManagedInstance] = []
        regressed = False

        for managed in list(status.instances.values()):
            record = managed.record
            if record.health not in _LIVE:
                continue

            try:
                health = self.runtime.health_of(managed.handle)
            except Exception as exc:
                logger.warning("Health check of instance %s failed: %s", record.id, exc)
                health = InstanceHealth.FAILED

            # An instance that vanished without being retired counts as failed.
            if health == InstanceHealth.TERMINATING:
                health = InstanceHealth.FAILED

            if health == record.health:
                continue

            if record.health == InstanceHealth.READY:
                regressed = True
            record.health = health
            self.registry.publish(record.id, health)

            if health == InstanceHealth.FAILED:
                failed.append(managed)

        for managed in failed:
            self._destroy(status, managed)
            self._record_failure(status, f"Instance {managed.record.id} failed its health check.")

        if (regressed or failed) and status.phase in {WorkloadPhase.STEADY, WorkloadPhase.SCALING}:
            status.phase = transition_workload_phase(status.phase, WorkloadEvent.HEALTH_REGRESSED)

    def _converge(self, status: WorkloadStatus, spec: WorkloadSpec) -> None:
        desired = spec.replicas
        live = sorted(status.live(), key=lambda m: m.record.created_sequence)
        current = [m for m in live if m.record.workload_generation == status.generation]
        outdated = [m for m in live if m.record.workload_generation != status.generation]

        if len(current) > desired:
            excess = len(current) - desired
            for managed in current[:excess]:
                self._destroy(status, managed)
            current = current[excess:]

        ready_current = sum(1 for m in current if m.record.health == InstanceHealth.READY)
        keep_outdated = max(0, desired - ready_current)
        if len(outdated) > keep_outdated:
            retire = len(outdated) - keep_outdated
            for managed in outdated[:retire]:
                self._destroy(status, managed)
            outdated = outdated[retire:]

        missing = desired - len(current)

        if status.phase == WorkloadPhase.PENDING:
            env = self._materialize(status, spec)
            if env is None:
                return
            status.phase = transition_workload_phase(status.phase, WorkloadEvent.DEPENDENCIES_RESOLVED)
            status.phase = transition_workload_phase(status.phase, WorkloadEvent.MATERIALIZED)
            if missing > 0:
                current.extend(self._create(status, spec, env, missing))
        elif missing > 0 and status.phase in {WorkloadPhase.SCALING, WorkloadPhase.STEADY}:
            if self.clock() >= status.backoff_until:
                env = self._materialize(status, spec)
                if env is None:
                    return
                current.extend(self._create(status, spec, env, missing))

        if status.phase == WorkloadPhase.SCALING and len(current) == desired and not outdated:
            status.phase = transition_workload_phase(status.phase, WorkloadEvent.CONVERGED)
            self._clear_error(status)
        elif status.phase == WorkloadPhase.STEADY and (len(current) != desired or outdated):
            status.phase = transition_workload_phase(status.phase, WorkloadEvent.HEALTH_REGRESSED)

    def _materialize(self, status: WorkloadStatus, spec: WorkloadSpec) -> Optional[MaterializedEnv]:
        try:
            env = self.materializer.resolve(spec)
        except (UnresolvedReference, VersionPinned) as exc:
            status.blocked_on = self.materializer.missing_references(spec)
            self._set_error(status, exc)
            if status.phase != WorkloadPhase.PENDING:
                status.phase = transition_workload_phase(status.phase, WorkloadEvent.DEPENDENCIES_MISSING)
            logger.info("Workload '%s' is blocked: %s", status.name, exc)
            return None

        status.blocked_on = []
        if status.last_error_code in {UnresolvedReference.error_code, VersionPinned.error_code}:
            self._clear_error(status)
        return env

    def _create(
        self,
        status: WorkloadStatus,
        spec: WorkloadSpec,
        env: MaterializedEnv,
        missing: int,
    ) -> List[ManagedInstance]:
        created: List[ManagedInstance] = []
        for _ in range(min(missing, self.settings.max_parallel_starts)):
            try:
                created.append(self._start_instance(status, spec, env))
            except InstanceStartFailure as exc:
                self._record_failure(status, str(exc))
                break
            except VersionPinned as exc:
                # A source generation was collected between resolve and pin; retry next pass.
                self._set_error(status, exc)
                break
        return created

    def _start_instance(self, status: WorkloadStatus, spec: WorkloadSpec, env: MaterializedEnv) -> ManagedInstance:
        pins: List[GenerationRef] = []
        try:
            for source in env.sources:
                pins.append(self.store.pin(source.kind, source.name, source.generation))
            pins.append(self.store.pin(ResourceKind.WORKLOAD, status.name, status.generation))

            try:
                handle = self.runtime.start(spec.image, dict(env.env), spec.port)
            except InstanceStartFailure:
                raise
            except Exception as exc:
                raise InstanceStartFailure(status.name, str(exc)) from exc
        except KeelsonError:
            for ref in pins:
                self.store.unpin(ref)
            raise

        sequence = next(self._sequence)
        labels = {"app": status.name}
        labels.update(spec.labels)
        record = Instance(
            id=f"{status.name}-{uuid.uuid4().hex[:8]}",
            workload_name=status.name,
            workload_generation=status.generation,
            health=InstanceHealth.PENDING,
            address=handle.address,
            port=handle.port or spec.port,
            labels=labels,
            created_sequence=sequence,
            pins=pins,
            env=dict(env.env),
        )
        managed = ManagedInstance(record=record, handle=handle)
        status.instances[record.id] = managed
        self.registry.register_instance(record)
        logger.info("Started instance %s of workload '%s' (generation %d)", record.id, status.name, status.generation)
        return managed

    def _destroy(self, status: WorkloadStatus, managed: ManagedInstance) -> None:
        record = managed.record
        if record.health != InstanceHealth.FAILED:
            record.health = InstanceHealth.TERMINATING
            self.registry.publish(record.id, InstanceHealth.TERMINATING)

        self._stop_with_grace(managed.handle)

        self.registry.forget(record.id)
        for ref in record.pins:
            self.store.unpin(ref)
        status.instances.pop(record.id, None)
        logger.info("Retired instance %s of workload '%s'", record.id, status.name)

    def _stop_with_grace(self, handle: InstanceHandle) -> bool:
        grace_seconds = self.settings.grace_period_ms / 1000.0
        future = self._stoppers.submit(self.runtime.stop, handle)
        try:
            future.result(timeout=grace_seconds)
            return True
        except FutureTimeout:
            logger.warning("Instance %s did not stop within %.1fs; killing it.", handle.id, grace_seconds)
        except Exception as exc:
            logger.warning("Stopping instance %s failed (%s); killing it.", handle.id, exc)

        self.runtime.kill(handle)
        return False

    def _terminate(self, status: WorkloadStatus) -> None:
        if status.phase != WorkloadPhase.TERMINATING:
            status.phase = transition_workload_phase(status.phase, WorkloadEvent.DELETED)
            logger.info("Workload '%s' deleted; terminating %d instances", status.name, len(status.instances))

        for managed in sorted(status.instances.values(), key=lambda m: m.record.created_sequence):
            self._destroy(status, managed)

        status.phase = transition_workload_phase(status.phase, WorkloadEvent.INSTANCES_DRAINED)
        status.blocked_on = []
        self._clear_error(status)

    def _record_failure(self, status: WorkloadStatus, message: str) -> None:
        status.attempts += 1
        status.last_error = message
        status.last_error_code = InstanceStartFailure.error_code

        if status.attempts >= self.settings.max_start_attempts:
            if status.phase in ACTIVE_PHASES and status.phase != WorkloadPhase.DEGRADED:
                status.phase = transition_workload_phase(status.phase, WorkloadEvent.RETRY_BUDGET_EXHAUSTED)
                logger.error(
                    "Workload '%s' is degraded after %d failed attempts at generation %d",
                    status.name,
                    status.attempts,
                    status.generation,
                )
            return

        status.backoff_until = self.clock() + self.backoff_delay(status.attempts)

    def backoff_delay(self, attempts: int) -> float:
        """Seconds to wait before the next start after `attempts` failures."""
        delay_ms = self.settings.backoff_base_ms * (2 ** max(attempts - 1, 0))
        return min(delay_ms, self.settings.backoff_max_ms) / 1000.0

    def _reset_generation(self, status: WorkloadStatus, generation: int) -> None:
        status.generation = generation
        status.attempts = 0
        status.backoff_until = 0.0
        if status.last_error_code == InstanceStartFailure.error_code:
            self._clear_error(status)

    def _adopt_instances(self, status: WorkloadStatus, previous: int) -> None:
        """Move instances of `previous` to the current generation when only the replica count changed."""
        for managed in status.live():
            record = managed.record
            if record.workload_generation != previous:
                continue
            new_ref = self.store.pin(ResourceKind.WORKLOAD, status.name, status.generation)
            for ref in record.pins:
                if ref.kind == ResourceKind.WORKLOAD:
                    self.store.unpin(ref)
            record.pins = [ref for ref in record.pins if ref.kind != ResourceKind.WORKLOAD] + [new_ref]
            record.workload_generation = status.generation

    def _consumers_of(self, kind: ResourceKind, name: str) -> Set[str]:
        consumers: Set[str] = set()
        for resource in self.store.list(ResourceKind.WORKLOAD):
            spec: WorkloadSpec = resource.typed_spec()
            if any(binding.source_kind == kind and binding.ref.name == name for binding in spec.env):
                consumers.add(resource.name)
        return consumers

    def _lock_for(self, name: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(name)
            if lock is None:
                lock = threading.Lock()
                self._locks[name] = lock
            return lock

    def _halt(self, exc: StoreCorruption) -> None:
        self.halted = exc
        logger.critical("Resource store corruption detected; reconciliation halted: %s", exc)
        raise exc

    def _set_error(self, status: WorkloadStatus, exc: Exception) -> None:
        status.last_error = str(exc)
        status.last_error_code = getattr(exc, "error_code", "ERR_INTERNAL")

    def _clear_error(self, status: WorkloadStatus) -> None:
        status.last_error = None
        status.last_error_code = None

    def _report(self, status: WorkloadStatus) -> WorkloadReport:
        instances = [m.record.model_copy(deep=True) for m in status.instances.values()]
        return WorkloadReport(
            name=status.name,
            phase=status.phase,
            generation=status.generation,
            replicas=status.replicas,
            ready=sum(1 for instance in instances if instance.health == InstanceHealth.READY),
            attempts=status.attempts,
            last_error=status.last_error,
            last_error_code=status.last_error_code,
            blocked_on=list(status.blocked_on),
            instances=instances,
        )
