from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, FrozenSet, Iterable, List, Mapping

from keelson.core.errors import NotFound
from keelson.core.models import Endpoint, Instance, InstanceHealth, Resource, ResourceKind, ServiceSpec

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RegistrySnapshot:
    """Immutable view of every service's Ready endpoints at one version."""

    version: int = 0
    endpoints: Mapping[str, FrozenSet[Endpoint]] = field(default_factory=lambda: MappingProxyType({}))

    def lookup(self, service_name: str) -> FrozenSet[Endpoint]:
        if service_name not in self.endpoints:
            raise NotFound(ResourceKind.SERVICE.value, service_name)
        return self.endpoints[service_name]


class ServiceRegistry:
    """
    Maps service names to the endpoints of Ready instances matching their selector.

    Every change rebuilds a complete snapshot and swaps it in one assignment,
    so readers either see the state before a health transition or after it,
    never a partial mix. Lookups never take the write lock.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._services: Dict[str, ServiceSpec] = {}
        self._instances: Dict[str, Instance] = {}
        self._snapshot = RegistrySnapshot()

    @property
    def version(self) -> int:
        return self._snapshot.version

    def snapshot(self) -> RegistrySnapshot:
        return self._snapshot

    def set_services(self, services: Iterable[Resource]) -> None:
        """Replace the known Service definitions."""
        next_services = {
            resource.name: ServiceSpec.model_validate(resource.spec)
            for resource in services
            if resource.kind == ResourceKind.SERVICE
        }
        with self._lock:
            self._services = next_services
            self._rebuild()

    def register_instance(self, instance: Instance) -> None:
        """Track a newly created instance (usually Pending)."""
        with self._lock:
            self._instances[instance.id] = instance.model_copy(deep=True)
            if instance.health == InstanceHealth.READY:
                self._rebuild()

    def publish(self, instance_id: str, health: InstanceHealth) -> None:
        """Record one health transition as a single atomic snapshot change."""
        with self._lock:
            instance = self._instances.get(instance_id)
            if instance is None:
                raise NotFound("Instance", instance_id)
            if instance.health == health:
                return
            was_ready = instance.health == InstanceHealth.READY
            self._instances[instance_id] = instance.model_copy(update={"health": health})
            if was_ready or health == InstanceHealth.READY:
                self._rebuild()

        logger.debug("Instance %s is now %s", instance_id, health.value)

    def forget(self, instance_id: str) -> None:
        with self._lock:
            instance = self._instances.pop(instance_id, None)
            if instance is not None and instance.health == InstanceHealth.READY:
                self._rebuild()

    def lookup(self, service_name: str) -> FrozenSet[Endpoint]:
        """Return the (address, port) pairs of Ready instances backing a service."""
        return self._snapshot.lookup(service_name)

    def instances(self) -> List[Instance]:
        with self._lock:
            return list(self._instances.values())

    def _rebuild(self) -> None:
        ready = [
            instance
            for instance in self._instances.values()
            if instance.health == InstanceHealth.READY and instance.address is not None
        ]

        endpoints: Dict[str, FrozenSet[Endpoint]] = {}
        for name, spec in self._services.items():
            members = set()
            for instance in ready:
                if not spec.selector.matches(instance.labels):
                    continue
                port = spec.target_port or instance.port
                if port is None:
                    continue
                members.add(Endpoint(address=instance.address, port=port))
            endpoints[name] = frozenset(members)

        self._snapshot = RegistrySnapshot(
            version=self._snapshot.version + 1,
            endpoints=MappingProxyType(endpoints),
        )
