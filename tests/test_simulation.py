import pytest
from greensched.models.cluster_api import CPUType, VMType, SLAClass, SState
from greensched.models.machine import PowerState
from greensched.models.strategies import STRATEGIES
from greensched.scheduler.policy_engine import PolicyEngine, SchedulerConfig, EngineState
from greensched.sim_cluster import SimulatedCluster, MachineSpec, WorkloadTask
from greensched.simulation import Simulation
from greensched.utils.workload import generate_machines, generate_workload, workload_to_frame


def build_simulation(strategy, workload, machines=None, **kwargs):
    cluster = SimulatedCluster(machines or generate_machines(2, seed=7))
    engine = PolicyEngine(cluster, SchedulerConfig(strategy=strategy))
    return Simulation(cluster, engine, workload, show_progress=False, **kwargs)


def test_workload_generation():
    """Test generated workloads are reproducible and well formed"""
    first = generate_workload(50, seed=3)
    second = generate_workload(50, seed=3)

    assert [t.arrival_time for t in first] == [t.arrival_time for t in second]
    assert [t.task_id for t in first] == list(range(50))
    arrivals = [t.arrival_time for t in first]
    assert arrivals == sorted(arrivals)
    assert {t.cpu_type for t in first} <= {CPUType.X86, CPUType.ARM}
    assert all(t.work >= 1_000 for t in first)

    frame = workload_to_frame(first)
    assert len(frame) == 50
    assert {'task_id', 'arrival_time', 'sla', 'memory'} <= set(frame.columns)


def test_machine_generation():
    """Test every CPU type gets its share of machines"""
    specs = generate_machines(3, cpu_types=(CPUType.X86, CPUType.POWER), powered_on_fraction=1.0, seed=1)

    assert len(specs) == 6
    assert [s.cpu_type for s in specs] == [CPUType.X86] * 3 + [CPUType.POWER] * 3
    assert all(s.powered_on for s in specs)


@pytest.mark.parametrize("strategy", sorted(STRATEGIES))
def test_simulation_completes_workload(strategy):
    """Test every strategy runs a small workload to completion"""
    workload = generate_workload(40, mean_work=100_000, seed=11)
    sim = build_simulation(strategy, workload)

    summary, metrics = sim.run()

    assert summary is not None
    assert summary.unplaced_tasks == []
    assert sim.completed == 40
    assert all(sim.cluster.is_finished(t.task_id) for t in workload)
    assert sim.engine.state == EngineState.STOPPED
    assert all(m.s_state == SState.S5 for m in sim.cluster.machines.values())
    assert summary.cluster_energy > 0
    assert set(summary.sla_violations) == {s.name for s in SLAClass}

    history = metrics.get_metrics_history()
    assert not history.empty
    assert history['completed_tasks'].iloc[-1] == 40
    report = metrics.get_full_report(summary.sla_violations, summary.cluster_energy)
    assert report['total_tasks'] == 40
    assert report['completion_rate'] == 1.0
    assert 'sla0_violation_pct' in report


def test_idle_machines_power_down_after_run():
    """Test the run continues until idle machines have been switched off"""
    machines = [MachineSpec(cpu_type=CPUType.X86, num_cores=4, memory_size=8192, mips=1000, powered_on=True)
                for _ in range(2)]
    workload = [WorkloadTask(task_id=0, arrival_time=10.0, cpu_type=CPUType.X86, vm_type=VMType.LINUX,
                             memory=512, sla=SLAClass.SLA3, work=50_000)]
    sim = build_simulation("least_loaded", workload, machines=machines)

    summary, _ = sim.run()

    assert sim.completed == 1
    power = sim.engine.power_manager.get_power_history()
    # Both machines reach OFF through the idle check before shutdown
    idle_offs = power[(power['to_state'] == PowerState.OFF.value) & (power['time'] < summary.time)]
    assert set(idle_offs['machine_id']) == {0, 1}
    assert summary.time >= sim.engine.power_policy.grace_period


def test_max_time_stops_run():
    """Test the run halts at max_time and reports what is left"""
    workload = [WorkloadTask(task_id=i, arrival_time=1_000_000.0 * (i + 1), cpu_type=CPUType.X86,
                             vm_type=VMType.LINUX, memory=256, sla=SLAClass.SLA2, work=10_000)
                for i in range(3)]
    sim = build_simulation("least_loaded", workload, max_time=1_500_000)

    summary, _ = sim.run()

    assert sim.completed == 1
    assert sim.current_time <= 1_500_000
    assert summary is not None
    assert sim.engine.state == EngineState.STOPPED
