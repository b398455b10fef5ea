from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol, Set

from keelson.core.errors import InstanceStartFailure
from keelson.core.models import InstanceHealth


@dataclass(frozen=True)
class InstanceHandle:
    """Opaque reference to one process unit started by a container runtime."""

    id: str
    image: str
    address: str
    port: Optional[int] = None


class ContainerRuntime(Protocol):
    """Image-execution facility the reconciler realizes instances through."""

    def start(self, image_ref: str, env: Dict[str, str], port: Optional[int]) -> InstanceHandle:
        ...

    def stop(self, handle: InstanceHandle) -> None:
        ...

    def kill(self, handle: InstanceHandle) -> None:
        ...

    def health_of(self, handle: InstanceHandle) -> InstanceHealth:
        ...


@dataclass
class _SimulatedProcess:
    handle: InstanceHandle
    env: Dict[str, str]
    health: InstanceHealth = InstanceHealth.PENDING
    polls: int = 0
    pinned_health: Optional[InstanceHealth] = None
    running: bool = True


@dataclass
class _Script:
    fail_start: Set[str] = field(default_factory=set)
    fail_health: Set[str] = field(default_factory=set)
    slow_stop: Set[str] = field(default_factory=set)


class SimulatedRuntime:
    """
    In-memory container runtime.

    Instances report Pending for `ready_after` health polls and Ready
    afterwards. Images can be scripted to fail at start, to fail their health
    checks, or to hang on stop for `stop_delay` seconds.
    """

    def __init__(self, ready_after: int = 1, stop_delay: float = 0.0, subnet: str = "10.0") -> None:
        self.ready_after = ready_after
        self.stop_delay = stop_delay
        self.subnet = subnet
        self.script = _Script()

        self.started: List[InstanceHandle] = []
        self.stopped: List[InstanceHandle] = []
        self.killed: List[InstanceHandle] = []

        self._processes: Dict[str, _SimulatedProcess] = {}
        self._sequence = 0
        self._lock = threading.Lock()
        self._release_stop = threading.Event()

    def fail_image(self, image_ref: str, on: str = "start") -> None:
        """Script an image to fail at `start` or at `health`."""
        with self._lock:
            if on == "start":
                self.script.fail_start.add(image_ref)
            elif on == "health":
                self.script.fail_health.add(image_ref)
            else:
                raise ValueError(f"Unknown failure point '{on}'. Use 'start' or 'health'.")

    def heal_image(self, image_ref: str) -> None:
        with self._lock:
            self.script.fail_start.discard(image_ref)
            self.script.fail_health.discard(image_ref)

    def hang_on_stop(self, image_ref: str) -> None:
        with self._lock:
            self.script.slow_stop.add(image_ref)

    def set_health(self, instance_id: str, health: InstanceHealth) -> None:
        """Force the health reported for one running instance."""
        with self._lock:
            self._processes[instance_id].pinned_health = health

    def running(self) -> List[InstanceHandle]:
        with self._lock:
            return [proc.handle for proc in self._processes.values() if proc.running]

    def env_of(self, instance_id: str) -> Dict[str, str]:
        with self._lock:
            return dict(self._processes[instance_id].env)

    def start(self, image_ref: str, env: Dict[str, str], port: Optional[int]) -> InstanceHandle:
        with self._lock:
            if image_ref in self.script.fail_start:
                raise InstanceStartFailure(image_ref, "image is scripted to fail on start")

            self._sequence += 1
            sequence = self._sequence
            address = f"{self.subnet}.{sequence // 254}.{sequence % 254 + 1}"
            handle = InstanceHandle(id=f"sim-{sequence:05d}", image=image_ref, address=address, port=port)
            self._processes[handle.id] = _SimulatedProcess(handle=handle, env=dict(env))
            self.started.append(handle)
            return handle

    def stop(self, handle: InstanceHandle) -> None:
        with self._lock:
            slow = handle.image in self.script.slow_stop
        if slow and self.stop_delay > 0:
            self._release_stop.wait(self.stop_delay)

        with self._lock:
            process = self._processes.get(handle.id)
            if process is not None and process.running:
                process.running = False
                process.health = InstanceHealth.TERMINATING
                self.stopped.append(handle)

    def kill(self, handle: InstanceHandle) -> None:
        with self._lock:
            process = self._processes.get(handle.id)
            if process is not None and process.running:
                process.running = False
                process.health = InstanceHealth.TERMINATING
            self.killed.append(handle)

    def health_of(self, handle: InstanceHandle) -> InstanceHealth:
        with self._lock:
            process = self._processes.get(handle.id)
            if process is None or not process.running:
                return InstanceHealth.TERMINATING

            if process.pinned_health is not None:
                process.health = process.pinned_health
                return process.health

            if handle.image in self.script.fail_health:
                process.health = InstanceHealth.FAILED
                return process.health

            process.polls += 1
            if process.polls >= self.ready_after:
                process.health = InstanceHealth.READY
            return process.health

    def release_stops(self) -> None:
        """Let every hanging stop call return immediately."""
        self._release_stop.set()
