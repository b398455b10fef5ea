from __future__ import annotations

import logging
import threading
import time
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from keelson.config.loader import load_config
from keelson.core.context import ClusterContext
from keelson.core.errors import CursorExpired, StoreCorruption
from keelson.core.models import InstanceHealth, Resource, ResourceKind, WorkloadPhase
from keelson.networking.ingress import IngressRouter
from keelson.networking.service_registry import ServiceRegistry
from keelson.reconciler.reconciler import Reconciler, WorkloadReport
from keelson.runtime.container import ContainerRuntime, SimulatedRuntime
from keelson.runtime.manifest_watcher import ManifestChangeSet, ManifestWatcher
from keelson.store.manifests import ManifestScanner, apply_resources, parse_manifest_text
from keelson.store.materializer import Materializer
from keelson.store.resource_store import ResourceStore
from keelson.utils.diagnostics import KeelsonDiagnostic, has_blocking_diagnostics

logger = logging.getLogger(__name__)


class ApplyStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


class ApplySummary(BaseModel):
    """Counts describing one manifest apply."""

    model_config = ConfigDict(extra="forbid")

    applied: int = 0
    unchanged: int = 0
    pruned: int = 0
    resources: Dict[str, int] = Field(default_factory=dict)


class ApplyReport(BaseModel):
    """Outcome of one manifest apply, handed to the apply callbacks.

    `changes` is set when the apply was triggered by the manifest watcher.
    """

    model_config = ConfigDict(extra="forbid")

    status: ApplyStatus
    summary: ApplySummary = Field(default_factory=ApplySummary)
    diagnostics: List[KeelsonDiagnostic] = Field(default_factory=list)
    changes: Optional[ManifestChangeSet] = None


class ClusterController:
    """Wires store, materializer, registry, router and reconciler for one project root."""

    def __init__(
        self,
        root_dir: Path,
        runtime: Optional[ContainerRuntime] = None,
        on_apply_success: Optional[Callable[[ApplyReport], None]] = None,
        on_apply_failure: Optional[Callable[[ApplyReport], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.root_dir = root_dir
        self.on_apply_success = on_apply_success
        self.on_apply_failure = on_apply_failure

        config_dir = root_dir if root_dir.is_dir() else root_dir.parent
        config_data = load_config(config_dir / "keelson.yaml")
        self.context = ClusterContext(config_dict=config_data)
        self.context.app["root_dir"] = str(config_dir.expanduser().resolve())

        state_path = self.state_path()
        limit = self.context.store.event_history_limit
        self.store = ResourceStore.load(state_path, limit) if state_path is not None else ResourceStore(limit)
        # Instances do not survive a restart, so nothing can still hold a restored pin.
        released = self.store.release_pins()
        if released:
            logger.info("Released %d pins restored from %s", released, state_path)

        self.runtime = runtime if runtime is not None else SimulatedRuntime()
        self.registry = ServiceRegistry()
        self.router = IngressRouter(self.registry)
        self.materializer = Materializer(self.store)
        self.reconciler = Reconciler(
            store=self.store,
            runtime=self.runtime,
            registry=self.registry,
            settings=self.context.reconciler,
            materializer=self.materializer,
            clock=clock,
        )

        self._rules_subscription = self.store.watch([ResourceKind.INGRESS_RULE], cursor=self.store.revision)
        self.router.set_rules(self.store.list(ResourceKind.INGRESS_RULE))

        self.watcher: Optional[ManifestWatcher] = None
        self.loop_thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    def state_path(self) -> Optional[Path]:
        state_file = self.context.store.state_file
        if not state_file:
            return None
        path = Path(state_file).expanduser()
        if not path.is_absolute():
            path = Path(self.context.app["root_dir"]) / path
        return path

    def load_manifests(self, prune: bool = False, changes: Optional[ManifestChangeSet] = None) -> ApplyReport:
        """Scan the root for manifests and apply every valid document.

        Documents that fail validation are reported and skipped. Pruning only
        happens when the scan is free of blocking diagnostics, so a broken file
        never deletes the resources it declares.
        """
        scan = ManifestScanner(self.root_dir).scan() if self.root_dir.exists() else None
        resources = scan.resources if scan is not None else []
        diagnostics = list(scan.diagnostics) if scan is not None else []

        blocked = has_blocking_diagnostics(diagnostics)
        if blocked and prune:
            diagnostics.append(KeelsonDiagnostic(
                file_path="<apply>",
                error_code="ERR_PRUNE_SKIPPED",
                severity="warning",
                message="Prune skipped because some manifests failed validation.",
            ))

        outcome = apply_resources(self.store, resources, prune=prune and not blocked)
        self._refresh_rules()
        self.context.sync_runtime_error_set(diagnostics, source="manifests")

        result = ApplyReport(
            status=ApplyStatus.FAILURE if blocked else ApplyStatus.SUCCESS,
            summary=ApplySummary(
                applied=len(outcome.applied),
                unchanged=len(outcome.unchanged),
                pruned=len(outcome.pruned),
                resources=dict(outcome.applied),
            ),
            diagnostics=diagnostics,
            changes=changes,
        )

        if result.status == ApplyStatus.SUCCESS and self.on_apply_success is not None:
            self.on_apply_success(result)
        elif result.status == ApplyStatus.FAILURE and self.on_apply_failure is not None:
            self.on_apply_failure(result)

        return result

    def apply(self, resource: Resource, expected_generation: Optional[int] = None) -> int:
        generation = self.store.put(resource, expected_generation=expected_generation)
        self._refresh_rules()
        return generation

    def apply_text(self, content: str) -> List[int]:
        """Apply every document of a YAML text, dependencies first."""
        resources = parse_manifest_text(content)
        apply_resources(self.store, resources)
        self._refresh_rules()
        return [self.store.get(resource.kind, resource.name).generation for resource in resources]

    def delete(self, kind: ResourceKind, name: str) -> None:
        self.store.delete(kind, name)
        self._refresh_rules()

    def tick(self) -> List[str]:
        """Run one reconciliation pass and refresh operator-facing state."""
        self._refresh_rules()
        names = self.reconciler.run_once()
        self.context.sync_runtime_error_set(self.workload_diagnostics(), source="reconciler")
        self.save_state()
        return names

    def converge(self, max_ticks: int = 50) -> bool:
        """Tick until every workload is Steady with Ready instances, or `max_ticks` pass."""
        for _ in range(max_ticks):
            self.reconciler.resync()
            self.tick()
            if self.is_converged():
                return True
        return False

    def is_converged(self) -> bool:
        for report in self.reconciler.statuses():
            if report.phase == WorkloadPhase.GONE:
                continue
            if report.phase != WorkloadPhase.STEADY:
                return False
            if any(instance.health != InstanceHealth.READY for instance in report.instances):
                return False
        return True

    def workload_diagnostics(self) -> List[KeelsonDiagnostic]:
        diagnostics: List[KeelsonDiagnostic] = []
        for report in self.reconciler.statuses():
            if report.last_error is None:
                continue
            diagnostics.append(KeelsonDiagnostic(
                file_path=f"{ResourceKind.WORKLOAD.value}/{report.name}",
                error_code=report.last_error_code or "ERR_INTERNAL",
                severity=self._severity_for(report),
                message=report.last_error,
                suggestion=self._suggestion_for(report),
            ))
        return diagnostics

    def save_state(self) -> Optional[Path]:
        path = self.state_path()
        if path is None:
            return None
        return self.store.save(path)

    def start(self, background: bool = True) -> None:
        """Start the control loop, plus manifest auto-apply when enabled."""
        if self.loop_thread is not None:
            return

        if self.context.watch.enabled and self.watcher is None and self.root_dir.is_dir():
            self.watcher = ManifestWatcher(
                root_dir=self.root_dir,
                interval_ms=self.context.watch.interval_ms,
                debounce_ms=self.context.watch.debounce_ms,
                include_patterns=self.context.watch.include_patterns,
                exclude_patterns=self.context.watch.exclude_patterns,
            )
            self.watcher.start()

        self._stop_event.clear()
        if background:
            self.loop_thread = threading.Thread(target=self._loop, name="keelson-controller", daemon=True)
            self.loop_thread.start()

    def stop(self) -> None:
        self._stop_event.set()

        if self.loop_thread is not None and self.loop_thread.is_alive():
            self.loop_thread.join(timeout=5)

        if self.watcher is not None:
            self.watcher.stop()

        self.loop_thread = None
        self.watcher = None
        self._rules_subscription.cancel()
        self.reconciler.close()

    def poll_once(self, now: float) -> ApplyReport | None:
        """Run a single watcher poll; returns the apply report when settled changes were applied."""
        if self.watcher is None:
            return None

        changes = self.watcher.poll(now=now)
        if changes is None:
            return None

        logger.info(
            "Manifest change detected in %s (kinds: %s)",
            ", ".join(changes.paths),
            ", ".join(sorted(kind.value for kind in changes.kinds)) or "none",
        )
        result = self.load_manifests(prune=True, changes=changes)
        if result.status == ApplyStatus.FAILURE:
            logger.warning("Auto-apply finished with %d diagnostics", len(result.diagnostics))
        return result

    def _loop(self) -> None:
        interval_seconds = max(self.context.reconciler.resync_interval_ms / 1000.0, 0.05)
        while not self._stop_event.is_set():
            try:
                self.poll_once(now=time.monotonic())
                self.reconciler.resync()
                self.tick()
            except StoreCorruption as exc:
                logger.critical("Control loop stopped: %s", exc)
                return
            self._stop_event.wait(interval_seconds)

    def _refresh_rules(self) -> None:
        try:
            changed = bool(self._rules_subscription.poll())
        except CursorExpired:
            self._rules_subscription.cancel()
            self._rules_subscription = self.store.watch([ResourceKind.INGRESS_RULE], cursor=self.store.revision)
            changed = True

        if changed:
            self.router.set_rules(self.store.list(ResourceKind.INGRESS_RULE))
            self._rules_subscription.ack(self._rules_subscription.cursor)

    @staticmethod
    def _severity_for(report: WorkloadReport) -> str:
        if report.phase == WorkloadPhase.DEGRADED:
            return "critical"
        if report.phase == WorkloadPhase.PENDING:
            return "error"
        return "warning"

    @staticmethod
    def _suggestion_for(report: WorkloadReport) -> Optional[str]:
        if report.phase == WorkloadPhase.DEGRADED:
            return "Fix the image or environment and re-apply the workload to reset its retry budget."
        if report.blocked_on:
            return "Apply the missing references: " + ", ".join(report.blocked_on)
        return None
