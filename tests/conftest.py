import itertools

import pytest

from greensched.models.cluster_api import CPUType, VMType, SLAClass, Priority
from greensched.models.machine import MachineRecord, PowerState
from greensched.models.task import TaskRecord
from greensched.scheduler.cluster_state import ClusterStateTracker
from greensched.scheduler.policy_engine import PolicyEngine, SchedulerConfig
from greensched.sim_cluster import SimulatedCluster, MachineSpec, WorkloadTask


@pytest.fixture
def tracker():
    """Create an empty ClusterStateTracker"""
    return ClusterStateTracker(container_task_limit=4, container_memory_overhead=8)


@pytest.fixture
def make_task():
    """Factory for TaskRecords"""
    def _make(task_id, memory=512, cpu_type=CPUType.X86, vm_type=VMType.LINUX, sla=SLAClass.SLA2):
        return TaskRecord(
            task_id=task_id,
            cpu_type=cpu_type,
            vm_type=vm_type,
            memory=memory,
            sla=sla,
            priority=Priority.MID
        )
    return _make


@pytest.fixture
def add_machine(tracker):
    """Factory adding a machine to the tracker"""
    def _add(machine_id, memory=4096, mips=1000, cores=4, cpu_type=CPUType.X86,
             state=PowerState.ACTIVE, energy=0.0):
        machine = MachineRecord(
            machine_id=machine_id,
            cpu_type=cpu_type,
            memory_capacity=memory,
            num_cores=cores,
            mips=mips,
            power_state=state,
            energy=energy
        )
        tracker.add_machine(machine)
        return machine
    return _add


@pytest.fixture
def load_machine(tracker, make_task):
    """Factory placing `count` tasks in one container on a machine"""
    task_ids = itertools.count(1000)

    def _load(machine_id, count, memory=512, vm_type=VMType.LINUX):
        container_id = 100 + machine_id
        if container_id not in tracker.containers:
            machine = tracker.machines[machine_id]
            tracker.add_container(container_id, vm_type, machine.cpu_type, machine_id)
        placed = []
        for _ in range(count):
            task = make_task(next(task_ids), memory=memory, cpu_type=tracker.machines[machine_id].cpu_type,
                             vm_type=vm_type)
            tracker.add_task(task)
            tracker.record_assignment(task.task_id, container_id, machine_id)
            placed.append(task.task_id)
        return placed
    return _load


@pytest.fixture
def events():
    """Events raised by the simulated cluster"""
    return []


@pytest.fixture
def make_cluster(events):
    """Factory for a SimulatedCluster of identical X86 machines"""
    def _make(n_machines=2, memory=4096, powered_on=True, cores=4, mips=1000):
        specs = [
            MachineSpec(cpu_type=CPUType.X86, num_cores=cores, memory_size=memory, mips=mips,
                        powered_on=powered_on)
            for _ in range(n_machines)
        ]
        cluster = SimulatedCluster(specs)
        cluster.event_sink = lambda time, kind, target, token: events.append((time, kind, target, token))
        return cluster
    return _make


@pytest.fixture
def make_engine():
    """Factory for an initialized PolicyEngine"""
    def _make(cluster, **config):
        engine = PolicyEngine(cluster, SchedulerConfig(**config))
        engine.on_init()
        return engine
    return _make


@pytest.fixture
def submit():
    """Register a task with the simulated cluster"""
    def _submit(cluster, task_id, memory=512, cpu_type=CPUType.X86, vm_type=VMType.LINUX,
                sla=SLAClass.SLA2, arrival=0.0, work=100_000):
        cluster.submit_task(WorkloadTask(
            task_id=task_id,
            arrival_time=arrival,
            cpu_type=cpu_type,
            vm_type=vm_type,
            memory=memory,
            sla=sla,
            work=work
        ))
    return _submit


@pytest.fixture
def finish():
    """Complete a running task on both the cluster and the engine"""
    def _finish(cluster, engine, task_id, now):
        token = cluster.tasks[task_id].token
        assert cluster.complete_task(task_id, token, now)
        engine.on_task_complete(now, task_id)
    return _finish
