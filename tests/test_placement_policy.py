import pytest
from greensched.models.cluster_api import CPUType, VMType, SLAClass
from greensched.models.machine import PowerState, PendingWake
from greensched.models.placement import (
    DecisionKind,
    LeastLoadedPolicy,
    EnergyAwareBinPackPolicy,
    HighPerformanceFirstPolicy,
    AdaptiveIdleConsolidationPolicy,
)


def test_unreachable_cpu_type(tracker, add_machine, make_task):
    """Test tasks with no compatible machine are unreachable"""
    add_machine(0, cpu_type=CPUType.X86)
    task = make_task(1, cpu_type=CPUType.ARM)

    decision = LeastLoadedPolicy().select(task, tracker)
    assert decision.kind == DecisionKind.UNREACHABLE
    assert not decision.feasible
    assert "ARM" in decision.reason


def test_least_loaded_prefers_idle_machine(tracker, add_machine, load_machine, make_task):
    """Test an idle machine is chosen before any busy one"""
    add_machine(0)
    add_machine(1)
    add_machine(2, state=PowerState.IDLE_PENDING)
    load_machine(0, 2)
    load_machine(1, 1)

    decision = LeastLoadedPolicy().select(make_task(1), tracker)
    assert decision.kind == DecisionKind.NEW_CONTAINER
    assert decision.machine_id == 2


def test_least_loaded_reuses_container(tracker, add_machine, load_machine, make_task):
    """Test the least loaded machine's matching container is reused"""
    add_machine(0)
    add_machine(1)
    load_machine(0, 3)
    load_machine(1, 1)

    decision = LeastLoadedPolicy().select(make_task(1), tracker)
    assert decision.kind == DecisionKind.USE_CONTAINER
    assert decision.machine_id == 1
    assert decision.container_id == 101


def test_full_container_needs_new_one(tracker, add_machine, load_machine, make_task):
    """Test a container at its task limit is never chosen"""
    add_machine(0)
    load_machine(0, 4)

    decision = LeastLoadedPolicy().select(make_task(1), tracker)
    assert decision.kind == DecisionKind.NEW_CONTAINER
    assert decision.machine_id == 0


def test_vm_type_mismatch_needs_new_container(tracker, add_machine, load_machine, make_task):
    """Test tasks only share containers of their own VM type"""
    add_machine(0)
    load_machine(0, 1, vm_type=VMType.WIN)

    decision = LeastLoadedPolicy().select(make_task(1, vm_type=VMType.LINUX), tracker)
    assert decision.kind == DecisionKind.NEW_CONTAINER


def test_memory_capacity_respected(tracker, add_machine, load_machine, make_task):
    """Test machines without room are skipped and off machines are provisioned"""
    add_machine(0, memory=1024)
    add_machine(1, memory=1024, state=PowerState.OFF)
    load_machine(0, 1, memory=900)

    decision = LeastLoadedPolicy().select(make_task(1, memory=512), tracker)
    assert decision.kind == DecisionKind.PROVISION
    assert decision.machine_id == 1

    # Needs room for the container overhead too
    decision = LeastLoadedPolicy().select(make_task(2, memory=1020), tracker)
    assert decision.kind == DecisionKind.NO_CAPACITY


def test_join_waking_machine(tracker, add_machine, make_task):
    """Test a machine already waking up is joined rather than woken again"""
    add_machine(0, state=PowerState.WAKING_UP)
    add_machine(1, state=PowerState.OFF)
    tracker.add_container(50, VMType.LINUX, CPUType.X86, 0, attached=False)
    first = make_task(1)
    tracker.add_task(first)
    tracker.add_pending_wake(PendingWake(0, 50, 1, created_container=True))

    decision = LeastLoadedPolicy().select(make_task(2), tracker)
    assert decision.kind == DecisionKind.JOIN_WAKE
    assert decision.machine_id == 0
    assert decision.container_id == 50

    decision = LeastLoadedPolicy().select(make_task(3, vm_type=VMType.WIN), tracker)
    assert decision.kind == DecisionKind.JOIN_WAKE
    assert decision.container_id is None


def test_urgent_task_provisions(tracker, add_machine, load_machine, make_task):
    """Test SLA0 tasks wake a machine instead of sharing a busy one"""
    add_machine(0)
    add_machine(1, state=PowerState.OFF)
    load_machine(0, 2)
    urgent = make_task(1, sla=SLAClass.SLA0)

    decision = LeastLoadedPolicy().select(urgent, tracker)
    assert decision.kind == DecisionKind.PROVISION
    assert decision.machine_id == 1

    decision = LeastLoadedPolicy(high_priority_provisioning=False).select(urgent, tracker)
    assert decision.kind == DecisionKind.USE_CONTAINER
    assert decision.machine_id == 0

    # Escalation overrides the task's own class
    relaxed = make_task(2, sla=SLAClass.SLA3)
    assert LeastLoadedPolicy().select(relaxed, tracker, urgent=True).kind == DecisionKind.PROVISION


def test_exclude_and_only(tracker, add_machine, make_task):
    """Test candidate filtering"""
    add_machine(0)
    add_machine(1)
    add_machine(2)
    policy = LeastLoadedPolicy()

    assert policy.select(make_task(1), tracker, exclude={0}).machine_id == 1
    assert policy.select(make_task(1), tracker, only={2}).machine_id == 2
    assert policy.select(make_task(1), tracker, only={0}, exclude={0}).kind == DecisionKind.NO_CAPACITY


def test_energy_aware_bin_pack(tracker, add_machine, load_machine, make_task):
    """Test ties in load are broken by energy rank"""
    add_machine(0, energy=9.0)
    add_machine(1, energy=2.0)
    load_machine(0, 1)
    load_machine(1, 1)

    decision = EnergyAwareBinPackPolicy().select(make_task(1), tracker)
    assert decision.machine_id == 1


def test_energy_aware_provisioning(tracker, add_machine, make_task):
    """Test the cheapest, then smallest, off machine is woken"""
    add_machine(0, memory=8192, state=PowerState.OFF, energy=1.0)
    add_machine(1, memory=2048, state=PowerState.OFF, energy=1.0)
    add_machine(2, memory=1024, state=PowerState.OFF, energy=5.0)

    decision = EnergyAwareBinPackPolicy().select(make_task(1), tracker)
    assert decision.kind == DecisionKind.PROVISION
    # Machines 0 and 1 tie on energy, the smaller one wins
    assert decision.machine_id == 1


def test_high_performance_first(tracker, add_machine, load_machine, make_task):
    """Test the fastest machine wins even when busier"""
    add_machine(0, mips=1000)
    add_machine(1, mips=2000)
    load_machine(0, 1)
    load_machine(1, 3)

    decision = HighPerformanceFirstPolicy().select(make_task(1), tracker)
    assert decision.machine_id == 1


def test_high_performance_provisioning(tracker, add_machine, make_task):
    """Test the fastest off machine is woken first"""
    add_machine(0, mips=1000, state=PowerState.OFF)
    add_machine(1, mips=3000, state=PowerState.OFF)

    decision = HighPerformanceFirstPolicy().select(make_task(1), tracker)
    assert decision.kind == DecisionKind.PROVISION
    assert decision.machine_id == 1


def test_adaptive_consolidation_packs(tracker, add_machine, load_machine, make_task):
    """Test tasks go to the busiest machine that fits, leaving idle ones alone"""
    add_machine(0)
    add_machine(1)
    add_machine(2, state=PowerState.IDLE_PENDING)
    load_machine(0, 1)
    load_machine(1, 3)

    decision = AdaptiveIdleConsolidationPolicy().select(make_task(1), tracker)
    assert decision.kind == DecisionKind.USE_CONTAINER
    assert decision.machine_id == 1


def test_adaptive_consolidation_provisions_largest(tracker, add_machine, make_task):
    """Test the largest off machine is woken first"""
    add_machine(0, memory=2048, state=PowerState.OFF)
    add_machine(1, memory=8192, state=PowerState.OFF)

    decision = AdaptiveIdleConsolidationPolicy().select(make_task(1), tracker)
    assert decision.kind == DecisionKind.PROVISION
    assert decision.machine_id == 1


@pytest.mark.parametrize("policy_cls", [
    LeastLoadedPolicy,
    EnergyAwareBinPackPolicy,
    HighPerformanceFirstPolicy,
    AdaptiveIdleConsolidationPolicy,
])
def test_select_does_not_mutate(policy_cls, tracker, add_machine, load_machine, make_task):
    """Test policies only read the tracker"""
    add_machine(0)
    add_machine(1, state=PowerState.OFF)
    load_machine(0, 2)
    before = tracker.get_machine_stats()

    policy_cls().select(make_task(1), tracker)

    assert tracker.get_machine_stats().equals(before)
    assert len(tracker.deferred) == 0
