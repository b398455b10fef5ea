from __future__ import annotations

from enum import Enum
from typing import Dict, Set

from keelson.core.models import WorkloadPhase


class WorkloadEvent(str, Enum):
    """Events that drive workload phase transitions."""

    DEPENDENCIES_RESOLVED = "dependencies_resolved"
    DEPENDENCIES_MISSING = "dependencies_missing"
    MATERIALIZED = "materialized"
    CONVERGED = "converged"
    SPEC_CHANGED = "spec_changed"
    HEALTH_REGRESSED = "health_regressed"
    RETRY_BUDGET_EXHAUSTED = "retry_budget_exhausted"
    RETRY_REQUESTED = "retry_requested"
    DELETED = "deleted"
    INSTANCES_DRAINED = "instances_drained"
    RECREATED = "recreated"


_TRANSITIONS: Dict[WorkloadPhase, Dict[WorkloadEvent, WorkloadPhase]] = {
    WorkloadPhase.PENDING: {
        WorkloadEvent.DEPENDENCIES_RESOLVED: WorkloadPhase.MATERIALIZING,
        WorkloadEvent.DEPENDENCIES_MISSING: WorkloadPhase.PENDING,
        WorkloadEvent.SPEC_CHANGED: WorkloadPhase.PENDING,
    },
    WorkloadPhase.MATERIALIZING: {
        WorkloadEvent.MATERIALIZED: WorkloadPhase.SCALING,
    },
    WorkloadPhase.SCALING: {
        WorkloadEvent.CONVERGED: WorkloadPhase.STEADY,
        WorkloadEvent.SPEC_CHANGED: WorkloadPhase.SCALING,
        WorkloadEvent.HEALTH_REGRESSED: WorkloadPhase.SCALING,
        WorkloadEvent.RETRY_BUDGET_EXHAUSTED: WorkloadPhase.DEGRADED,
        WorkloadEvent.DEPENDENCIES_MISSING: WorkloadPhase.PENDING,
    },
    WorkloadPhase.STEADY: {
        WorkloadEvent.SPEC_CHANGED: WorkloadPhase.SCALING,
        WorkloadEvent.HEALTH_REGRESSED: WorkloadPhase.SCALING,
        WorkloadEvent.RETRY_BUDGET_EXHAUSTED: WorkloadPhase.DEGRADED,
        WorkloadEvent.DEPENDENCIES_MISSING: WorkloadPhase.PENDING,
    },
    WorkloadPhase.DEGRADED: {
        WorkloadEvent.SPEC_CHANGED: WorkloadPhase.SCALING,
        WorkloadEvent.RETRY_REQUESTED: WorkloadPhase.SCALING,
        WorkloadEvent.HEALTH_REGRESSED: WorkloadPhase.DEGRADED,
        WorkloadEvent.DEPENDENCIES_MISSING: WorkloadPhase.PENDING,
    },
    WorkloadPhase.TERMINATING: {
        WorkloadEvent.INSTANCES_DRAINED: WorkloadPhase.GONE,
    },
    WorkloadPhase.GONE: {
        WorkloadEvent.RECREATED: WorkloadPhase.PENDING,
    },
}

# Phases whose instances are actively being converged.
ACTIVE_PHASES: Set[WorkloadPhase] = {
    WorkloadPhase.SCALING,
    WorkloadPhase.STEADY,
    WorkloadPhase.DEGRADED,
}


def transition_workload_phase(current: WorkloadPhase, event: WorkloadEvent) -> WorkloadPhase:
    """Compute the next workload phase for a given event.

    Deletion moves any live phase to Terminating. Every other pair not listed
    in the transition table is invalid and raises ValueError.
    """

    if event == WorkloadEvent.DELETED:
        if current == WorkloadPhase.GONE:
            raise ValueError(f"Invalid workload transition: {current} -> {event}")
        return WorkloadPhase.TERMINATING

    allowed = _TRANSITIONS.get(current)
    if allowed is None:
        raise ValueError(f"Unknown workload phase: {current}")

    if event not in allowed:
        raise ValueError(f"Invalid workload transition: {current} -> {event}")

    return allowed[event]
