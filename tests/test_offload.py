import pytest
from greensched.models.cluster_api import VMType, CPUType, SLAClass
from greensched.models.machine import PowerState
from greensched.models.placement import LeastLoadedPolicy, DecisionKind
from greensched.scheduler.offload import OffloadEngine


@pytest.fixture
def offload(tracker):
    """Create an OffloadEngine over the shared tracker"""
    return OffloadEngine(tracker, LeastLoadedPolicy(), max_attempts=3)


def test_pressured_machines(offload, add_machine, load_machine):
    """Test only congested, running, non-full machines are candidates"""
    add_machine(0, memory=4096)
    add_machine(1, memory=2048)
    add_machine(2)
    add_machine(3, state=PowerState.OFF)
    add_machine(4, memory=520)
    add_machine(5, cpu_type=CPUType.ARM)
    load_machine(0, 1)
    load_machine(1, 1)
    load_machine(4, 1)  # exactly full
    load_machine(5, 1)

    assert offload.pressured_machines(CPUType.X86) == [1, 0]
    assert 5 in offload.pressured_machines()


def test_choose_victim_prefers_least_urgent(tracker, offload, add_machine, make_task):
    """Test the least urgent task that frees enough memory is moved"""
    add_machine(0, memory=4096)
    add_machine(1, memory=4096)
    tracker.add_container(100, VMType.LINUX, CPUType.X86, 0)
    for task_id, sla, memory in ((1, SLAClass.SLA0, 1024), (2, SLAClass.SLA3, 256), (3, SLAClass.SLA1, 2048)):
        tracker.add_task(make_task(task_id, memory=memory, sla=sla))
        tracker.record_assignment(task_id, 100, 0)

    victim_id, decision = offload.choose_victim(0)
    assert victim_id == 2
    assert decision.machine_id == 1
    assert decision.kind in (DecisionKind.USE_CONTAINER, DecisionKind.NEW_CONTAINER)

    # Free memory on machine 0 is 4096 - 8 - 3328 = 760; only task 3 frees 2048
    victim_id, _ = offload.choose_victim(0, needed_memory=2048)
    assert victim_id == 3

    # No single task frees 3000
    assert offload.choose_victim(0, needed_memory=3000) is None


def test_choose_victim_needs_somewhere_to_go(tracker, offload, add_machine, load_machine):
    """Test nothing is moved when no other machine could take it"""
    add_machine(0)
    add_machine(1, state=PowerState.OFF)
    load_machine(0, 2)

    assert offload.choose_victim(0) is None


def test_relieve_for_is_bounded(offload, add_machine, load_machine, make_task):
    """Test a placement gives up after the attempt limit"""
    for machine_id in range(5):
        add_machine(machine_id)
        load_machine(machine_id, 1)
    relocated = []

    def relocate(task_id, decision, now):
        relocated.append(task_id)
        return True

    placed, attempts = offload.relieve_for(make_task(1, memory=3800), 0.0, relocate, lambda: False)

    assert not placed
    assert attempts == 3
    assert len(relocated) == 3
    history = offload.get_offload_history()
    assert len(history) == 3
    assert list(history['origin_machine']) == [0, 1, 2]
    assert not history['succeeded'].any()


def test_relieve_for_stops_once_placed(offload, add_machine, load_machine, make_task):
    """Test offloading stops as soon as the retry succeeds"""
    for machine_id in range(3):
        add_machine(machine_id)
        load_machine(machine_id, 1)
    retries = iter([False, True])

    placed, attempts = offload.relieve_for(
        make_task(1), 0.0, lambda task_id, decision, now: True, lambda: next(retries)
    )

    assert placed
    assert attempts == 2


def test_relieve_is_not_reentrant(offload, add_machine, load_machine, make_task):
    """Test a relocation cannot start another offload"""
    add_machine(0)
    add_machine(1)
    load_machine(0, 1)
    nested = []

    def relocate(task_id, decision, now):
        nested.append(offload.relieve_for(make_task(2), now, relocate, lambda: True))
        nested.append(offload.relieve_machine(1, now, relocate))
        return False

    offload.relieve_for(make_task(1), 0.0, relocate, lambda: True)

    assert nested == [(False, 0), False]
    assert not offload.active


def test_relieve_machine(offload, add_machine, load_machine):
    """Test a memory warning moves one task away"""
    add_machine(0)
    add_machine(1)
    victims = load_machine(0, 2)
    moved = []

    assert offload.relieve_machine(0, 0.0, lambda task_id, decision, now: moved.append(task_id) or True)
    assert len(moved) == 1
    assert moved[0] in victims

    assert not offload.relieve_machine(42, 0.0, lambda task_id, decision, now: True)


def test_relieve_for_skips_task_no_machine_can_hold(offload, add_machine, load_machine, make_task):
    """Test nothing is moved for a task bigger than any empty machine"""
    add_machine(0, memory=4096)
    add_machine(1, memory=4096)
    add_machine(2, memory=8192, cpu_type=CPUType.ARM)
    load_machine(0, 1)
    relocated = []

    oversized = make_task(1, memory=4090)
    assert not offload.could_fit(oversized)
    assert offload.could_fit(make_task(2, memory=4088))

    placed, attempts = offload.relieve_for(
        oversized, 0.0, lambda task_id, decision, now: relocated.append(task_id) or True, lambda: True
    )

    assert (placed, attempts) == (False, 0)
    assert relocated == []
    assert offload.get_offload_history().empty
