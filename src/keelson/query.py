"""Read-only operator queries over a running cluster (the `keelson get` surface)."""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from keelson.core.errors import NotFound, ServiceUnavailable
from keelson.core.models import Endpoint, Instance, ResourceKind
from keelson.reconciler.reconciler import WorkloadReport
from keelson.runtime.controller import ClusterController


class ResourceRow(BaseModel):
    kind: ResourceKind
    name: str
    generation: int
    revision: int


class WorkloadDescription(BaseModel):
    """Declared spec and observed state of one workload."""

    name: str
    generation: int
    spec: Dict[str, Any]
    status: Optional[WorkloadReport] = None
    missing_references: List[str] = Field(default_factory=list)


def list_resources(controller: ClusterController, kind: Optional[ResourceKind] = None) -> List[ResourceRow]:
    return [
        ResourceRow(kind=resource.kind, name=resource.name, generation=resource.generation, revision=resource.revision)
        for resource in controller.store.list(kind)
    ]


def list_instances(controller: ClusterController, workload_name: Optional[str] = None) -> List[Instance]:
    instances = controller.reconciler.instances()
    if workload_name is not None:
        instances = [instance for instance in instances if instance.workload_name == workload_name]
    return sorted(instances, key=lambda instance: (instance.workload_name, instance.created_sequence))


def describe_workload(controller: ClusterController, name: str) -> WorkloadDescription:
    """Raises NotFound when the workload is not declared."""
    resource = controller.store.get(ResourceKind.WORKLOAD, name)

    try:
        report: Optional[WorkloadReport] = controller.reconciler.status(name)
    except NotFound:
        report = None

    return WorkloadDescription(
        name=resource.name,
        generation=resource.generation,
        spec=resource.spec,
        status=report,
        missing_references=controller.materializer.missing_references(resource.typed_spec()),
    )


def forward_target(controller: ClusterController, service_name: str) -> Endpoint:
    """
    Pick the endpoint a port-forward to `service_name` would tunnel to.

    The choice is stable for a given endpoint set (lowest address, then port).
    Raises NotFound for an undeclared service and ServiceUnavailable when it has no Ready endpoint.
    """
    endpoints = controller.registry.lookup(service_name)
    if not endpoints:
        raise ServiceUnavailable(service_name)
    return sorted(endpoints, key=lambda endpoint: (endpoint.address, endpoint.port))[0]
