import pytest

from keelson.core.models import WorkloadPhase
from keelson.reconciler.phases import WorkloadEvent, transition_workload_phase


def test_happy_path_to_steady():
    phase = WorkloadPhase.PENDING
    for event in (WorkloadEvent.DEPENDENCIES_RESOLVED, WorkloadEvent.MATERIALIZED, WorkloadEvent.CONVERGED):
        phase = transition_workload_phase(phase, event)

    assert phase == WorkloadPhase.STEADY


def test_steady_goes_back_to_scaling_on_change_or_regression():
    assert transition_workload_phase(WorkloadPhase.STEADY, WorkloadEvent.SPEC_CHANGED) == WorkloadPhase.SCALING
    assert transition_workload_phase(WorkloadPhase.STEADY, WorkloadEvent.HEALTH_REGRESSED) == WorkloadPhase.SCALING


def test_retry_budget_and_recovery():
    assert transition_workload_phase(WorkloadPhase.SCALING, WorkloadEvent.RETRY_BUDGET_EXHAUSTED) == WorkloadPhase.DEGRADED
    assert transition_workload_phase(WorkloadPhase.DEGRADED, WorkloadEvent.RETRY_REQUESTED) == WorkloadPhase.SCALING
    assert transition_workload_phase(WorkloadPhase.DEGRADED, WorkloadEvent.SPEC_CHANGED) == WorkloadPhase.SCALING


@pytest.mark.parametrize(
    "phase",
    [
        WorkloadPhase.PENDING,
        WorkloadPhase.MATERIALIZING,
        WorkloadPhase.SCALING,
        WorkloadPhase.STEADY,
        WorkloadPhase.DEGRADED,
        WorkloadPhase.TERMINATING,
    ],
)
def test_deletion_terminates_from_any_live_phase(phase):
    assert transition_workload_phase(phase, WorkloadEvent.DELETED) == WorkloadPhase.TERMINATING


def test_terminating_drains_to_gone_and_gone_can_be_recreated():
    assert transition_workload_phase(WorkloadPhase.TERMINATING, WorkloadEvent.INSTANCES_DRAINED) == WorkloadPhase.GONE
    assert transition_workload_phase(WorkloadPhase.GONE, WorkloadEvent.RECREATED) == WorkloadPhase.PENDING


def test_invalid_transitions_raise():
    with pytest.raises(ValueError):
        transition_workload_phase(WorkloadPhase.PENDING, WorkloadEvent.CONVERGED)
    with pytest.raises(ValueError):
        transition_workload_phase(WorkloadPhase.GONE, WorkloadEvent.DELETED)
    with pytest.raises(ValueError):
        transition_workload_phase(WorkloadPhase.STEADY, WorkloadEvent.MATERIALIZED)
