"""Keelson: a declarative multi-service deployment orchestrator."""

from keelson.core.errors import (
	CursorExpired,
	InstanceStartFailure,
	KeelsonError,
	NoMatchingRule,
	NotFound,
	ResourceConflict,
	ServiceUnavailable,
	StoreCorruption,
	UnresolvedReference,
	VersionPinned,
)
from keelson.core.models import Endpoint, Instance, InstanceHealth, Resource, ResourceKind, WorkloadPhase
from keelson.networking import IngressRouter, ServiceRegistry
from keelson.reconciler.reconciler import Reconciler
from keelson.runtime import SimulatedRuntime
from keelson.runtime.controller import ClusterController
from keelson.store.materializer import Materializer
from keelson.store.resource_store import ResourceStore

__all__ = [
	"ClusterController",
	"CursorExpired",
	"Endpoint",
	"IngressRouter",
	"Instance",
	"InstanceHealth",
	"InstanceStartFailure",
	"KeelsonError",
	"Materializer",
	"NoMatchingRule",
	"NotFound",
	"Reconciler",
	"Resource",
	"ResourceConflict",
	"ResourceKind",
	"ResourceStore",
	"ServiceRegistry",
	"ServiceUnavailable",
	"SimulatedRuntime",
	"StoreCorruption",
	"UnresolvedReference",
	"VersionPinned",
	"WorkloadPhase",
]
