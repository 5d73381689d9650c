import pandas as pd
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Set
import logging

from greensched.config import (
    TIME_UNIT,
    WAKE_LATENCY,
    MIGRATION_LATENCY,
    CONTAINER_MEMORY_OVERHEAD,
    SLA_DEADLINE_FACTORS,
    REFERENCE_MIPS,
    PSTATE_SLOWDOWN,
    MEMORY_WARNING_THRESHOLD,
)
from greensched.models.cluster_api import (
    ClusterAPI,
    ClusterCommandError,
    CPUType,
    VMType,
    SLAClass,
    Priority,
    SState,
    PState,
    TaskDescriptor,
    MachineDescriptor,
    VMDescriptor,
)

logger = logging.getLogger(__name__)

# Events the simulated cluster raises towards the clock
MACHINE_READY = "MACHINE_READY"
MIGRATION_DONE = "MIGRATION_DONE"
TASK_COMPLETE = "TASK_COMPLETE"
MEMORY_WARNING = "MEMORY_WARNING"

# (time, event type, target id, token)
EventSink = Callable[[float, str, int, Optional[int]], None]


@dataclass
class MachineSpec:
    """Static description of a simulated machine"""
    cpu_type: CPUType
    num_cores: int
    memory_size: int
    mips: int
    idle_power: float = 100.0  # watts at zero load
    max_power: float = 250.0   # watts with every core busy
    powered_on: bool = False


@dataclass
class WorkloadTask:
    """A task the simulation will submit; work is microseconds at REFERENCE_MIPS"""
    task_id: int
    arrival_time: float
    cpu_type: CPUType
    vm_type: VMType
    memory: int
    sla: SLAClass
    work: float
    priority: Priority = Priority.MID

    @property
    def deadline(self) -> Optional[float]:
        factor = SLA_DEADLINE_FACTORS.get(int(self.sla))
        if factor is None:
            return None
        return self.arrival_time + factor * self.work


@dataclass
class _SimMachine:
    machine_id: int
    spec: MachineSpec
    s_state: SState
    p_states: List[PState]
    booting: bool = False
    vms: Set[int] = field(default_factory=set)
    energy: float = 0.0  # kWh
    memory_warned: bool = False


@dataclass
class _SimVM:
    vm_id: int
    vm_type: VMType
    cpu_type: CPUType
    machine_id: Optional[int] = None
    tasks: List[int] = field(default_factory=list)
    migrating_to: Optional[int] = None


@dataclass
class _SimTask:
    workload: WorkloadTask
    vm_id: Optional[int] = None
    start_time: Optional[float] = None
    completion_time: Optional[float] = None
    token: int = 0


class SimulatedCluster(ClusterAPI):
    """
    In-memory cluster the policy engine can drive.

    Machines draw power linearly between idle and max with the share of busy
    cores, wakes and migrations take a fixed latency, and tasks run for their
    work scaled by machine speed and core P-state. Asynchronous completions
    are announced through `event_sink`; the simulation feeds them back via
    `finish_wake`, `finish_migration` and `complete_task`.
    """

    def __init__(self,
                 machine_specs: List[MachineSpec],
                 wake_latency: float = WAKE_LATENCY,
                 migration_latency: float = MIGRATION_LATENCY,
                 vm_memory_overhead: int = CONTAINER_MEMORY_OVERHEAD,
                 event_sink: Optional[EventSink] = None):
        """
        Initialize the simulated cluster.

        Args:
            machine_specs: One spec per machine, ids follow list order
            wake_latency: Time from S0 request to machine ready
            migration_latency: Time a container migration takes
            vm_memory_overhead: Memory each attached container occupies
            event_sink: Receives asynchronous events for the clock
        """
        self.wake_latency = wake_latency
        self.migration_latency = migration_latency
        self.vm_memory_overhead = vm_memory_overhead
        self.event_sink = event_sink
        self.now = 0.0

        self.machines: Dict[int, _SimMachine] = {}
        for machine_id, spec in enumerate(machine_specs):
            self.machines[machine_id] = _SimMachine(
                machine_id=machine_id,
                spec=spec,
                s_state=SState.S0 if spec.powered_on else SState.S5,
                p_states=[PState.P0] * spec.num_cores
            )
        self.vms: Dict[int, _SimVM] = {}
        self.tasks: Dict[int, _SimTask] = {}
        self._next_vm_id = 0

    # Clock

    def _emit(self, time: float, event_type: str, target: int, token: Optional[int] = None) -> None:
        if self.event_sink is not None:
            self.event_sink(time, event_type, target, token)

    def _power(self, machine: _SimMachine) -> float:
        if machine.s_state != SState.S0:
            return 0.0
        busy = sum(len(self.vms[v].tasks) for v in machine.vms)
        utilization = min(1.0, busy / machine.spec.num_cores) if machine.spec.num_cores else 0.0
        return machine.spec.idle_power + (machine.spec.max_power - machine.spec.idle_power) * utilization

    def advance(self, now: float) -> None:
        """Integrate energy up to `now`"""
        if now < self.now:
            raise ValueError(f"Time went backwards: {now} < {self.now}")
        hours = (now - self.now) / TIME_UNIT / 3600
        for machine in self.machines.values():
            machine.energy += self._power(machine) * hours / 1000
        self.now = now

    # Workload

    def submit_task(self, task: WorkloadTask) -> None:
        if task.task_id in self.tasks:
            raise ValueError(f"Task {task.task_id} already submitted")
        self.tasks[task.task_id] = _SimTask(workload=task)

    def task_duration(self, task_id: int, machine_id: int) -> float:
        machine = self.machines[machine_id]
        slowdown = max(PSTATE_SLOWDOWN[int(p)] for p in machine.p_states) if machine.p_states else 1.0
        return self.tasks[task_id].workload.work * REFERENCE_MIPS / machine.spec.mips * slowdown

    def is_finished(self, task_id: int) -> bool:
        task = self.tasks.get(task_id)
        return task is not None and task.completion_time is not None

    def complete_task(self, task_id: int, token: int, now: float) -> bool:
        """
        Finish a running task if the completion event is still current.

        Returns:
            True if the task completed; False for stale events
        """
        task = self.tasks.get(task_id)
        if task is None or task.vm_id is None or task.token != token or task.completion_time is not None:
            return False
        vm = self.vms[task.vm_id]
        vm.tasks.remove(task_id)
        task.vm_id = None
        task.completion_time = now
        self._check_memory(vm.machine_id)
        return True

    def finish_wake(self, machine_id: int) -> bool:
        machine = self.machines[machine_id]
        if not machine.booting:
            return False
        machine.booting = False
        machine.s_state = SState.S0
        logger.debug(f"Simulated machine {machine_id} booted at {self.now}")
        return True

    def finish_migration(self, vm_id: int) -> bool:
        vm = self.vms.get(vm_id)
        if vm is None or vm.migrating_to is None:
            return False
        self.machines[vm.machine_id].vms.discard(vm_id)
        self.machines[vm.migrating_to].vms.add(vm_id)
        vm.machine_id = vm.migrating_to
        vm.migrating_to = None
        return True

    # Queries

    def get_task_info(self, task_id: int) -> TaskDescriptor:
        task = self.tasks.get(task_id)
        if task is None:
            raise ClusterCommandError(f"Unknown task {task_id}")
        w = task.workload
        return TaskDescriptor(
            task_id=w.task_id,
            cpu_type=w.cpu_type,
            vm_type=w.vm_type,
            memory=w.memory,
            sla=w.sla,
            priority=w.priority
        )

    def memory_used(self, machine_id: int) -> int:
        machine = self.machines[machine_id]
        used = 0
        for vm_id in machine.vms:
            used += self.vm_memory_overhead
            used += sum(self.tasks[t].workload.memory for t in self.vms[vm_id].tasks)
        return used

    def get_machine_info(self, machine_id: int) -> MachineDescriptor:
        machine = self._machine(machine_id)
        return MachineDescriptor(
            machine_id=machine_id,
            cpu_type=machine.spec.cpu_type,
            num_cores=machine.spec.num_cores,
            memory_size=machine.spec.memory_size,
            memory_used=self.memory_used(machine_id),
            s_state=machine.s_state,
            mips=machine.spec.mips,
            p_state=machine.p_states[0] if machine.p_states else PState.P0,
            active_tasks=sum(len(self.vms[v].tasks) for v in machine.vms),
            active_vms=len(machine.vms),
            energy_consumed=machine.energy
        )

    def get_vm_info(self, vm_id: int) -> VMDescriptor:
        vm = self._vm(vm_id)
        return VMDescriptor(
            vm_id=vm.vm_id,
            vm_type=vm.vm_type,
            cpu_type=vm.cpu_type,
            machine_id=vm.machine_id,
            active_tasks=list(vm.tasks)
        )

    def get_total_machines(self) -> int:
        return len(self.machines)

    def get_machine_energy(self, machine_id: int) -> float:
        return self._machine(machine_id).energy

    def get_cluster_energy(self) -> float:
        return sum(m.energy for m in self.machines.values())

    def get_sla_report(self, sla: SLAClass) -> float:
        """
        Percentage of tasks of an SLA class that missed their deadline.

        A task that has not finished counts as a violation once its deadline
        has passed.
        """
        tasks = [t for t in self.tasks.values() if t.workload.sla == sla]
        if not tasks:
            return 0.0
        violations = 0
        for task in tasks:
            deadline = task.workload.deadline
            if deadline is None:
                continue
            finished_at = task.completion_time if task.completion_time is not None else self.now
            if finished_at > deadline:
                violations += 1
        return 100.0 * violations / len(tasks)

    # Commands

    def create_vm(self, vm_type: VMType, cpu_type: CPUType) -> int:
        vm_id = self._next_vm_id
        self._next_vm_id += 1
        self.vms[vm_id] = _SimVM(vm_id=vm_id, vm_type=vm_type, cpu_type=cpu_type)
        return vm_id

    def attach_vm(self, vm_id: int, machine_id: int) -> None:
        vm = self._vm(vm_id)
        machine = self._machine(machine_id)
        if vm.machine_id is not None:
            raise ClusterCommandError(f"VM {vm_id} is already attached to machine {vm.machine_id}")
        if machine.s_state != SState.S0 or machine.booting:
            raise ClusterCommandError(f"Machine {machine_id} is not running")
        if machine.spec.cpu_type != vm.cpu_type:
            raise ClusterCommandError(
                f"VM {vm_id} needs {vm.cpu_type.value}, machine {machine_id} is {machine.spec.cpu_type.value}"
            )
        if self.memory_used(machine_id) + self.vm_memory_overhead > machine.spec.memory_size:
            raise ClusterCommandError(f"Machine {machine_id} has no memory for another VM")
        vm.machine_id = machine_id
        machine.vms.add(vm_id)

    def add_task(self, vm_id: int, task_id: int, priority: Priority) -> None:
        vm = self._vm(vm_id)
        task = self.tasks.get(task_id)
        if task is None:
            raise ClusterCommandError(f"Unknown task {task_id}")
        if vm.machine_id is None:
            raise ClusterCommandError(f"VM {vm_id} is not attached")
        if task.vm_id is not None or task.completion_time is not None:
            raise ClusterCommandError(f"Task {task_id} is not runnable")
        if task.workload.vm_type != vm.vm_type or task.workload.cpu_type != vm.cpu_type:
            raise ClusterCommandError(f"Task {task_id} is incompatible with VM {vm_id}")
        machine = self.machines[vm.machine_id]
        if self.memory_used(vm.machine_id) + task.workload.memory > machine.spec.memory_size:
            raise ClusterCommandError(f"Machine {vm.machine_id} has no memory for task {task_id}")

        vm.tasks.append(task_id)
        task.vm_id = vm_id
        task.token += 1
        if task.start_time is None:
            task.start_time = self.now
        finish = self.now + self.task_duration(task_id, vm.machine_id)
        self._emit(finish, TASK_COMPLETE, task_id, task.token)
        self._check_memory(vm.machine_id)

    def remove_task(self, vm_id: int, task_id: int) -> None:
        vm = self._vm(vm_id)
        if task_id not in vm.tasks:
            raise ClusterCommandError(f"Task {task_id} is not in VM {vm_id}")
        vm.tasks.remove(task_id)
        task = self.tasks[task_id]
        task.vm_id = None
        task.token += 1  # invalidates the pending completion

    def migrate_vm(self, vm_id: int, machine_id: int) -> None:
        vm = self._vm(vm_id)
        target = self._machine(machine_id)
        if vm.machine_id is None:
            raise ClusterCommandError(f"VM {vm_id} is not attached")
        if vm.migrating_to is not None:
            raise ClusterCommandError(f"VM {vm_id} is already migrating")
        if target.s_state != SState.S0 or target.booting:
            raise ClusterCommandError(f"Machine {machine_id} is not running")
        if target.spec.cpu_type != vm.cpu_type:
            raise ClusterCommandError(f"Machine {machine_id} cannot host VM {vm_id}")
        footprint = self.vm_memory_overhead + sum(self.tasks[t].workload.memory for t in vm.tasks)
        if self.memory_used(machine_id) + footprint > target.spec.memory_size:
            raise ClusterCommandError(f"Machine {machine_id} has no memory for VM {vm_id}")
        vm.migrating_to = machine_id
        self._emit(self.now + self.migration_latency, MIGRATION_DONE, vm_id)

    def set_machine_state(self, machine_id: int, s_state: SState) -> None:
        machine = self._machine(machine_id)
        if s_state == SState.S0:
            if machine.s_state == SState.S0 or machine.booting:
                raise ClusterCommandError(f"Machine {machine_id} is already on")
            machine.booting = True
            self._emit(self.now + self.wake_latency, MACHINE_READY, machine_id)
            return

        if machine.vms:
            raise ClusterCommandError(f"Machine {machine_id} still hosts {len(machine.vms)} VMs")
        machine.s_state = s_state
        machine.booting = False

    def set_core_performance(self, machine_id: int, core: int, p_state: PState) -> None:
        machine = self._machine(machine_id)
        if not 0 <= core < machine.spec.num_cores:
            raise ClusterCommandError(f"Machine {machine_id} has no core {core}")
        machine.p_states[core] = p_state

    def shutdown_vm(self, vm_id: int) -> None:
        vm = self._vm(vm_id)
        for task_id in vm.tasks:
            task = self.tasks[task_id]
            task.vm_id = None
            task.token += 1
            logger.warning(f"Task {task_id} lost when VM {vm_id} was shut down")
        vm.tasks = []
        if vm.machine_id is not None:
            self.machines[vm.machine_id].vms.discard(vm_id)
        if vm.migrating_to is not None:
            vm.migrating_to = None
        del self.vms[vm_id]

    # Helpers

    def _machine(self, machine_id: int) -> _SimMachine:
        machine = self.machines.get(machine_id)
        if machine is None:
            raise ClusterCommandError(f"Unknown machine {machine_id}")
        return machine

    def _vm(self, vm_id: int) -> _SimVM:
        vm = self.vms.get(vm_id)
        if vm is None:
            raise ClusterCommandError(f"Unknown VM {vm_id}")
        return vm

    def _check_memory(self, machine_id: Optional[int]) -> None:
        if machine_id is None:
            return
        machine = self.machines[machine_id]
        over = self.memory_used(machine_id) > MEMORY_WARNING_THRESHOLD * machine.spec.memory_size
        if over and not machine.memory_warned:
            self._emit(self.now, MEMORY_WARNING, machine_id)
        machine.memory_warned = over

    def get_task_table(self) -> pd.DataFrame:
        """
        Get the lifecycle of every submitted task.

        Returns:
            DataFrame with arrival, start, completion and deadline per task
        """
        rows = []
        for task in self.tasks.values():
            w = task.workload
            rows.append({
                'task_id': w.task_id,
                'sla': int(w.sla),
                'cpu_type': w.cpu_type.value,
                'memory': w.memory,
                'arrival_time': w.arrival_time,
                'start_time': task.start_time,
                'completion_time': task.completion_time,
                'deadline': w.deadline
            })
        return pd.DataFrame(rows)
