import pandas as pd
from typing import Dict, Iterable, List, Optional, Tuple
from collections import defaultdict
import logging

from greensched.config import CONTAINER_TASK_LIMIT, CONTAINER_MEMORY_OVERHEAD
from greensched.models.cluster_api import CPUType, VMType
from greensched.models.machine import MachineRecord, ContainerRecord, PendingWake, PowerState
from greensched.models.task import TaskRecord, TaskState
from greensched.scheduler.deferral_queue import DeferralQueue

logger = logging.getLogger(__name__)


class ClusterStateTracker:
    """
    Authoritative in-memory view of machines, containers and tasks.

    Every mutation of placement state goes through this class so that the
    assignment and capacity invariants hold in one place. Machine load and
    memory use are derived from the containers a machine hosts rather than
    counted incrementally.
    """

    def __init__(self,
                 container_task_limit: int = CONTAINER_TASK_LIMIT,
                 container_memory_overhead: int = CONTAINER_MEMORY_OVERHEAD):
        """
        Initialize the tracker.

        Args:
            container_task_limit: Maximum number of tasks per container
            container_memory_overhead: Memory a container occupies on its host
        """
        self.container_task_limit = container_task_limit
        self.container_memory_overhead = container_memory_overhead

        self.machines: Dict[int, MachineRecord] = {}
        self.containers: Dict[int, ContainerRecord] = {}
        self.tasks: Dict[int, TaskRecord] = {}
        self.assignments: Dict[int, int] = {}  # task id -> container id
        self.pending_wakes: Dict[int, List[PendingWake]] = defaultdict(list)
        self.deferred = DeferralQueue()

    # Machines

    def add_machine(self, machine: MachineRecord) -> None:
        if machine.machine_id in self.machines:
            logger.warning(f"Machine {machine.machine_id} already tracked, replacing its record")
        self.machines[machine.machine_id] = machine
        logger.debug(
            f"Tracking machine {machine.machine_id} ({machine.cpu_type.value}, "
            f"{machine.memory_capacity} MB, {machine.power_state.value})"
        )

    def machines_of_type(self, cpu_type: CPUType) -> List[MachineRecord]:
        return [m for m in self.machines.values() if m.cpu_type == cpu_type]

    def containers_on(self, machine_id: int) -> List[ContainerRecord]:
        machine = self.machines.get(machine_id)
        if machine is None:
            return []
        return [self.containers[c] for c in sorted(machine.containers)]

    def load(self, machine_id: int) -> int:
        """Number of tasks running in containers hosted on the machine"""
        return sum(c.load for c in self.containers_on(machine_id))

    def container_footprint(self, container_id: int) -> int:
        container = self.containers[container_id]
        return self.container_memory_overhead + sum(self.tasks[t].memory for t in container.tasks)

    def memory_used(self, machine_id: int) -> int:
        return sum(self.container_footprint(c.container_id) for c in self.containers_on(machine_id))

    def memory_reserved(self, machine_id: int) -> int:
        """Memory promised to pending wakes and in-flight migrations"""
        reserved = sum(self.tasks[w.task_id].memory for w in self.pending_wakes.get(machine_id, []))
        for container in self.containers.values():
            if container.migrating_to == machine_id:
                reserved += self.container_footprint(container.container_id)
        return reserved

    def memory_available(self, machine_id: int) -> int:
        machine = self.machines[machine_id]
        return machine.memory_capacity - self.memory_used(machine_id) - self.memory_reserved(machine_id)

    def memory_ratio(self, machine_id: int) -> float:
        machine = self.machines[machine_id]
        if machine.memory_capacity <= 0:
            return 1.0
        return self.memory_used(machine_id) / machine.memory_capacity

    def energy_rank(self, machine_id: int) -> int:
        """Position of the machine when sorted by energy consumed (ascending)"""
        ordered = sorted(self.machines.values(), key=lambda m: (m.energy, m.machine_id))
        for rank, machine in enumerate(ordered):
            if machine.machine_id == machine_id:
                return rank
        raise KeyError(machine_id)

    def refresh_energy(self, energies: Dict[int, float]) -> None:
        for machine_id, energy in energies.items():
            if machine_id in self.machines:
                self.machines[machine_id].energy = energy

    # Containers

    def add_container(self,
                      container_id: int,
                      vm_type: VMType,
                      cpu_type: CPUType,
                      machine_id: int,
                      attached: bool = True) -> ContainerRecord:
        container = ContainerRecord(
            container_id=container_id,
            vm_type=vm_type,
            cpu_type=cpu_type,
            machine_id=machine_id,
            attached=attached
        )
        self.containers[container_id] = container
        self.machines[machine_id].containers.add(container_id)
        logger.debug(f"Container {container_id} ({vm_type.value}) placed on machine {machine_id}")
        return container

    def attach_container(self, container_id: int) -> None:
        self.containers[container_id].attached = True

    def remove_container(self, container_id: int) -> List[int]:
        """
        Stop tracking a container.

        Returns:
            Task ids that were still assigned to it (now untracked)
        """
        container = self.containers.pop(container_id, None)
        if container is None:
            logger.warning(f"Attempted to remove non-existent container {container_id}")
            return []
        machine = self.machines.get(container.machine_id)
        if machine is not None:
            machine.containers.discard(container_id)
        orphans = list(container.tasks)
        for task_id in orphans:
            self.assignments.pop(task_id, None)
        return orphans

    # Tasks

    def add_task(self, task: TaskRecord) -> None:
        if task.task_id in self.tasks:
            logger.warning(f"Task {task.task_id} already tracked, replacing its record")
        self.tasks[task.task_id] = task

    def record_assignment(self, task_id: int, container_id: int, machine_id: int) -> None:
        """
        Record that a task now runs in a container on a machine.

        Raises:
            ValueError: if the assignment would break a capacity invariant
        """
        task = self.tasks[task_id]
        container = self.containers[container_id]
        if container.machine_id != machine_id:
            raise ValueError(
                f"Container {container_id} is on machine {container.machine_id}, not {machine_id}"
            )
        if task_id in self.assignments:
            raise ValueError(f"Task {task_id} is already assigned to container {self.assignments[task_id]}")
        if container.load >= self.container_task_limit:
            raise ValueError(f"Container {container_id} is at its limit of {self.container_task_limit} tasks")

        self.deferred.remove(task_id)
        container.tasks.append(task_id)
        self.assignments[task_id] = container_id
        task.container_id = container_id
        task.state = TaskState.ASSIGNED
        logger.info(f"Assigned task {task_id} to container {container_id} on machine {machine_id}")

    def record_removal(self, task_id: int) -> Optional[int]:
        """
        Detach a task from its container without completing it.

        Returns:
            Machine id the task was removed from, or None if it was not assigned
        """
        container_id = self.assignments.pop(task_id, None)
        if container_id is None:
            logger.warning(f"Attempted to remove unassigned task {task_id}")
            return None
        container = self.containers[container_id]
        container.tasks.remove(task_id)
        task = self.tasks[task_id]
        task.container_id = None
        task.state = TaskState.PENDING
        return container.machine_id

    def record_completion(self, task_id: int) -> Optional[int]:
        """
        Mark a task as completed and release its container slot.

        Returns:
            Machine id that hosted the task, or None if the task was not assigned
        """
        if task_id not in self.assignments:
            logger.warning(f"Completion for task {task_id} which holds no assignment, ignoring")
            return None
        machine_id = self.record_removal(task_id)
        task = self.tasks.pop(task_id)
        task.state = TaskState.COMPLETED
        return machine_id

    def defer(self, task_id: int) -> None:
        if task_id in self.assignments:
            raise ValueError(f"Task {task_id} holds an assignment and cannot be deferred")
        self.tasks[task_id].state = TaskState.DEFERRED
        self.deferred.push(task_id)

    # Pending wakes

    def add_pending_wake(self, wake: PendingWake) -> None:
        machine = self.machines[wake.machine_id]
        if machine.power_state != PowerState.WAKING_UP:
            raise ValueError(f"Machine {wake.machine_id} is not waking up")
        self.deferred.remove(wake.task_id)
        self.tasks[wake.task_id].state = TaskState.PENDING
        self.pending_wakes[wake.machine_id].append(wake)

    def pop_pending_wakes(self, machine_id: int) -> List[PendingWake]:
        """Remove and return every pending wake for a machine, oldest first"""
        return self.pending_wakes.pop(machine_id, [])

    def pending_containers(self, machine_id: int) -> List[ContainerRecord]:
        """Unattached containers waiting for the machine to come up"""
        return [c for c in self.containers_on(machine_id) if not c.attached]

    def pending_load(self, container_id: int) -> int:
        container = self.containers[container_id]
        return sum(
            1 for w in self.pending_wakes.get(container.machine_id, [])
            if w.container_id == container_id
        )

    def is_pending(self, task_id: int) -> bool:
        return any(w.task_id == task_id for wakes in self.pending_wakes.values() for w in wakes)

    # Migrations

    def begin_migration(self, container_id: int, target_machine_id: int) -> None:
        container = self.containers[container_id]
        if container.is_migrating:
            raise ValueError(f"Container {container_id} is already migrating")
        container.migrating_to = target_machine_id

    def complete_migration(self, container_id: int) -> Optional[Tuple[int, int]]:
        """
        Move a migrating container to its target host.

        Returns:
            (source machine id, target machine id), or None if nothing was in flight
        """
        container = self.containers.get(container_id)
        if container is None or not container.is_migrating:
            logger.warning(f"Migration completion for container {container_id} with no migration in flight")
            return None
        source = container.machine_id
        target = container.migrating_to
        self.machines[source].containers.discard(container_id)
        self.machines[target].containers.add(container_id)
        container.machine_id = target
        container.migrating_to = None
        logger.info(f"Container {container_id} migrated from machine {source} to machine {target}")
        return source, target

    def migrations_in_flight(self) -> List[ContainerRecord]:
        return [c for c in self.containers.values() if c.is_migrating]

    # Reporting

    def get_machine_stats(self) -> pd.DataFrame:
        """
        Get current statistics for all machines.

        Returns:
            DataFrame containing machine statistics
        """
        stats = []
        for machine in self.machines.values():
            used = self.memory_used(machine.machine_id)
            stats.append({
                'machine_id': machine.machine_id,
                'cpu_type': machine.cpu_type.value,
                'power_state': machine.power_state.value,
                'memory_capacity': machine.memory_capacity,
                'memory_used': used,
                'memory_reserved': self.memory_reserved(machine.machine_id),
                'memory_utilization': used / machine.memory_capacity if machine.memory_capacity else 0.0,
                'containers': len(machine.containers),
                'task_count': self.load(machine.machine_id),
                'energy': machine.energy,
                'idle_since': machine.idle_since
            })
        return pd.DataFrame(stats)

    def get_task_stats(self) -> pd.DataFrame:
        """
        Get current statistics for all live tasks.

        Returns:
            DataFrame containing task statistics
        """
        stats = []
        for task in self.tasks.values():
            container = self.containers.get(task.container_id) if task.container_id is not None else None
            stats.append({
                'task_id': task.task_id,
                'state': task.state.value,
                'cpu_type': task.cpu_type.value,
                'vm_type': task.vm_type.value,
                'memory': task.memory,
                'sla': int(task.sla),
                'container_id': task.container_id,
                'machine_id': container.machine_id if container else None
            })
        return pd.DataFrame(stats)

    def validate_state(self) -> Tuple[bool, List[str]]:
        """
        Validate the current state of the tracker.

        Returns:
            Tuple of (is_valid, list of validation messages)
        """
        messages = []
        is_valid = True

        # Capacity
        for machine in self.machines.values():
            used = self.memory_used(machine.machine_id)
            if used > machine.memory_capacity:
                messages.append(
                    f"Machine {machine.machine_id} memory overcommitted: "
                    f"{used} > {machine.memory_capacity}"
                )
                is_valid = False

        for container in self.containers.values():
            if container.load > self.container_task_limit:
                messages.append(
                    f"Container {container.container_id} holds {container.load} tasks, "
                    f"limit is {self.container_task_limit}"
                )
                is_valid = False
            if container.container_id not in self.machines[container.machine_id].containers:
                messages.append(
                    f"Container {container.container_id} missing from machine {container.machine_id}"
                )
                is_valid = False

        # Every live task sits in exactly one place
        pending_ids = [w.task_id for wakes in self.pending_wakes.values() for w in wakes]
        for task_id in self.tasks:
            homes = (
                (task_id in self.assignments)
                + (task_id in self.deferred)
                + pending_ids.count(task_id)
            )
            if homes != 1:
                messages.append(f"Task {task_id} is tracked in {homes} places")
                is_valid = False

        for task_id, container_id in self.assignments.items():
            container = self.containers.get(container_id)
            if container is None or task_id not in container.tasks:
                messages.append(f"Task {task_id} assigned to container {container_id} which does not hold it")
                is_valid = False

        # Pending wakes only target machines that are powering on
        for machine_id, wakes in self.pending_wakes.items():
            if wakes and self.machines[machine_id].power_state != PowerState.WAKING_UP:
                messages.append(
                    f"Machine {machine_id} has {len(wakes)} pending wakes but is "
                    f"{self.machines[machine_id].power_state.value}"
                )
                is_valid = False

        # Idle timers are only armed on idle machines
        for machine in self.machines.values():
            if machine.idle_since is not None and self.load(machine.machine_id) > 0:
                messages.append(f"Machine {machine.machine_id} has an idle timer but carries load")
                is_valid = False

        return is_valid, messages
