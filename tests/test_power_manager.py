from greensched.models.cluster_api import CPUType, VMType, SState, PState
from greensched.models.machine import PowerState
from greensched.sim_cluster import MACHINE_READY


def test_init_arms_idle_timers(make_cluster, make_engine):
    """Test machines that start on begin idle and at full performance"""
    cluster = make_cluster(n_machines=2, powered_on=True)
    cluster.set_core_performance(0, 1, PState.P3)
    engine = make_engine(cluster)

    for machine in engine.tracker.machines.values():
        assert machine.power_state == PowerState.IDLE_PENDING
        assert machine.idle_since == 0.0
    assert cluster.machines[0].p_states == [PState.P0] * 4


def test_provision_is_not_repeated(make_cluster, make_engine, events):
    """Test a machine already waking up is not asked to wake again"""
    cluster = make_cluster(n_machines=1, powered_on=False)
    engine = make_engine(cluster)
    power = engine.power_manager

    assert engine.tracker.machines[0].power_state == PowerState.OFF
    assert power.provision(0, 0.0)
    assert engine.tracker.machines[0].power_state == PowerState.WAKING_UP
    assert not power.provision(0, 10.0)

    wakes = [e for e in events if e[1] == MACHINE_READY]
    assert len(wakes) == 1
    assert wakes[0][2] == 0


def test_activate(make_cluster, make_engine):
    """Test machine ready moves WAKING_UP to ACTIVE with top performance"""
    cluster = make_cluster(n_machines=1, powered_on=False)
    engine = make_engine(cluster)
    power = engine.power_manager

    assert not power.activate(0, 0.0)
    power.provision(0, 0.0)
    cluster.finish_wake(0)
    assert power.activate(0, 50_000)
    assert engine.tracker.machines[0].power_state == PowerState.ACTIVE
    assert all(p == PState.P0 for p in cluster.machines[0].p_states)
    assert not power.activate(0, 60_000)
    assert not power.activate(99, 60_000)


def test_idle_check_honours_grace(make_cluster, make_engine):
    """Test idle machines go down only after the grace period"""
    cluster = make_cluster(n_machines=2, powered_on=True)
    engine = make_engine(cluster, idle_grace_period=200_000)
    power = engine.power_manager

    assert power.idle_check(100_000) == []
    assert power.idle_check(200_000) == [0, 1]
    for machine_id in (0, 1):
        assert engine.tracker.machines[machine_id].power_state == PowerState.OFF
        assert cluster.machines[machine_id].s_state == SState.S5


def test_power_down_failure_keeps_machine(make_cluster, make_engine):
    """Test a rejected power-down leaves the machine running"""
    cluster = make_cluster(n_machines=1, powered_on=True)
    engine = make_engine(cluster)
    stray = cluster.create_vm(VMType.LINUX, CPUType.X86)
    cluster.attach_vm(stray, 0)

    assert not engine.power_manager.power_down(0, 10.0)
    assert engine.tracker.machines[0].power_state == PowerState.ACTIVE
    assert engine.tracker.machines[0].idle_since is None
    assert cluster.machines[0].s_state == SState.S0


def test_idle_check_verifies_collaborator(make_cluster, make_engine, submit):
    """Test a machine still running work on the collaborator is kept on"""
    cluster = make_cluster(n_machines=1, powered_on=True)
    engine = make_engine(cluster, idle_grace_period=100)
    submit(cluster, 1)
    vm = cluster.create_vm(VMType.LINUX, CPUType.X86)
    cluster.attach_vm(vm, 0)
    cluster.add_task(vm, 1, engine.cluster.get_task_info(1).priority)

    assert engine.power_manager.idle_check(1_000) == []
    assert engine.tracker.machines[0].power_state == PowerState.ACTIVE


def test_power_off_all_and_history(make_cluster, make_engine):
    """Test shutdown switches every machine off and transitions are recorded"""
    cluster = make_cluster(n_machines=2, powered_on=True)
    engine = make_engine(cluster)
    power = engine.power_manager

    power.power_off_all(500.0)

    assert all(m.power_state == PowerState.OFF for m in engine.tracker.machines.values())
    assert all(m.s_state == SState.S5 for m in cluster.machines.values())

    history = power.get_power_history()
    assert {'time', 'machine_id', 'from_state', 'to_state'} <= set(history.columns)
    assert (history['to_state'] == PowerState.OFF.value).sum() == 2
