from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Collection, List, Optional, Tuple
import logging

from greensched.models.machine import MachineRecord, PowerState
from greensched.models.task import TaskRecord

logger = logging.getLogger(__name__)


class DecisionKind(Enum):
    """What a placement policy wants done with a task"""
    USE_CONTAINER = "USE_CONTAINER"    # existing container on a running machine
    NEW_CONTAINER = "NEW_CONTAINER"    # fresh container on a running machine
    JOIN_WAKE = "JOIN_WAKE"            # ride along with a machine already waking up
    PROVISION = "PROVISION"            # power on an off machine
    NO_CAPACITY = "NO_CAPACITY"
    UNREACHABLE = "UNREACHABLE"        # no machine of the CPU type exists


@dataclass
class PlacementDecision:
    """Outcome of a policy's selection; committed later by the engine"""
    kind: DecisionKind
    machine_id: Optional[int] = None
    container_id: Optional[int] = None
    reason: str = ""

    @property
    def feasible(self) -> bool:
        return self.kind not in (DecisionKind.NO_CAPACITY, DecisionKind.UNREACHABLE)


@dataclass
class Option:
    """A running machine/container pair able to take a task"""
    machine: MachineRecord
    container_id: Optional[int]  # None means a new container is needed
    machine_load: int
    container_load: int
    energy_rank: int = 0

    @property
    def is_idle(self) -> bool:
        if self.container_id is None:
            return self.machine_load == 0
        return self.container_load == 0

    def to_decision(self) -> PlacementDecision:
        if self.container_id is None:
            return PlacementDecision(DecisionKind.NEW_CONTAINER, self.machine.machine_id)
        return PlacementDecision(DecisionKind.USE_CONTAINER, self.machine.machine_id, self.container_id)


class PlacementPolicy(ABC):
    """
    Decides where a task should run.

    Policies never mutate state: `select` inspects the tracker and returns a
    PlacementDecision. Subclasses only choose how options are ranked and in
    which order off machines are provisioned.
    """

    name = "base"
    prefer_idle = True

    def __init__(self, high_priority_provisioning: bool = True):
        """
        Initialize the policy.

        Args:
            high_priority_provisioning: Let SLA0 tasks wake a machine rather
                than share a busy one
        """
        self.high_priority_provisioning = high_priority_provisioning

    @abstractmethod
    def rank_key(self, option: Option) -> Tuple:
        """Sort key for running options; the smallest wins"""
        pass

    @abstractmethod
    def provision_key(self, machine: MachineRecord, tracker) -> Tuple:
        """Sort key for machines that would need to be woken; the smallest wins"""
        pass

    def select(self,
               task: TaskRecord,
               tracker,
               exclude: Collection[int] = (),
               only: Optional[Collection[int]] = None,
               urgent: Optional[bool] = None) -> PlacementDecision:
        """
        Choose a placement for a task.

        Args:
            task: Task to place
            tracker: ClusterStateTracker to read from
            exclude: Machine ids that must not be used
            only: If given, restrict candidates to these machine ids
            urgent: Override the task's own urgency (SLA escalation)

        Returns:
            PlacementDecision describing what to do
        """
        compatible = tracker.machines_of_type(task.cpu_type)
        if not compatible:
            return PlacementDecision(
                DecisionKind.UNREACHABLE,
                reason=f"no machine provides CPU type {task.cpu_type.value}"
            )

        candidates = [
            m for m in compatible
            if m.machine_id not in exclude and (only is None or m.machine_id in only)
        ]
        options = self.running_options(task, tracker, candidates)
        logger.debug(f"Task {task.task_id}: {len(options)} running options among {len(candidates)} machines")

        if self.prefer_idle:
            idle = [o for o in options if o.is_idle]
            if idle:
                return min(idle, key=self.rank_key).to_decision()

        if urgent is None:
            urgent = task.is_urgent
        if urgent and self.high_priority_provisioning:
            decision = self.wake_decision(task, tracker, candidates)
            if decision is not None:
                return decision

        if options:
            return min(options, key=self.rank_key).to_decision()

        decision = self.wake_decision(task, tracker, candidates)
        if decision is not None:
            return decision

        return PlacementDecision(
            DecisionKind.NO_CAPACITY,
            reason=f"no {task.cpu_type.value} machine has room for {task.memory} MB"
        )

    def running_options(self,
                        task: TaskRecord,
                        tracker,
                        candidates: List[MachineRecord]) -> List[Option]:
        """
        List every way the task could start right now.

        Args:
            task: Task to place
            tracker: ClusterStateTracker to read from
            candidates: Machines of the right CPU type

        Returns:
            Options on running machines whose memory would not be exceeded
        """
        options = []
        for machine in candidates:
            if not machine.is_running:
                continue
            free = tracker.memory_available(machine.machine_id)
            machine_load = tracker.load(machine.machine_id)
            rank = tracker.energy_rank(machine.machine_id)

            usable = [
                c for c in tracker.containers_on(machine.machine_id)
                if c.attached
                and not c.is_migrating
                and c.vm_type == task.vm_type
                and c.cpu_type == task.cpu_type
                and c.load < tracker.container_task_limit
            ]
            if usable:
                if task.memory <= free:
                    options.extend(
                        Option(machine, c.container_id, machine_load, c.load, rank) for c in usable
                    )
            elif task.memory + tracker.container_memory_overhead <= free:
                options.append(Option(machine, None, machine_load, 0, rank))
        return options

    def wake_decision(self,
                      task: TaskRecord,
                      tracker,
                      candidates: List[MachineRecord]) -> Optional[PlacementDecision]:
        """
        Find a machine that is waking up, or can be woken, for the task.

        A machine already waking up is joined rather than asked to wake again.

        Returns:
            JOIN_WAKE or PROVISION decision, or None if nothing fits
        """
        waking = sorted(
            (m for m in candidates if m.power_state == PowerState.WAKING_UP),
            key=lambda m: self.provision_key(m, tracker)
        )
        for machine in waking:
            free = tracker.memory_available(machine.machine_id)
            for container in tracker.pending_containers(machine.machine_id):
                if (container.vm_type == task.vm_type
                        and tracker.pending_load(container.container_id) < tracker.container_task_limit
                        and task.memory <= free):
                    return PlacementDecision(DecisionKind.JOIN_WAKE, machine.machine_id, container.container_id)
            if task.memory + tracker.container_memory_overhead <= free:
                return PlacementDecision(DecisionKind.JOIN_WAKE, machine.machine_id)

        off = sorted(
            (m for m in candidates if m.power_state == PowerState.OFF),
            key=lambda m: self.provision_key(m, tracker)
        )
        for machine in off:
            if task.memory + tracker.container_memory_overhead <= tracker.memory_available(machine.machine_id):
                return PlacementDecision(DecisionKind.PROVISION, machine.machine_id)
        return None


class LeastLoadedPolicy(PlacementPolicy):
    """Greedy placement on the machine running the fewest tasks"""

    name = "least_loaded"

    def rank_key(self, option: Option) -> Tuple:
        return (option.machine_load, option.container_load, option.machine.machine_id)

    def provision_key(self, machine: MachineRecord, tracker) -> Tuple:
        return (machine.machine_id,)


class EnergyAwareBinPackPolicy(PlacementPolicy):
    """
    Least-loaded placement with ties broken by energy rank.

    Machines to wake are chosen cheapest first, and among equally cheap
    machines the smallest one that fits (best fit).
    """

    name = "energy_aware_bin_pack"

    def rank_key(self, option: Option) -> Tuple:
        return (option.machine_load, option.energy_rank, option.container_load, option.machine.machine_id)

    def provision_key(self, machine: MachineRecord, tracker) -> Tuple:
        return (machine.energy, machine.memory_capacity, machine.machine_id)


class HighPerformanceFirstPolicy(PlacementPolicy):
    """Send work to the fastest machines first"""

    name = "high_performance_first"

    def rank_key(self, option: Option) -> Tuple:
        return (-option.machine.mips, option.machine_load, option.container_load, option.machine.machine_id)

    def provision_key(self, machine: MachineRecord, tracker) -> Tuple:
        return (-machine.mips, -machine.num_cores, machine.machine_id)


class AdaptiveIdleConsolidationPolicy(PlacementPolicy):
    """
    Pack tasks onto the busiest machine that still fits.

    Idle machines are left alone so the power policy can switch them off.
    When something has to be woken, the largest machine goes first.
    """

    name = "adaptive_idle_consolidation"
    prefer_idle = False

    def rank_key(self, option: Option) -> Tuple:
        return (-option.machine_load, -option.container_load, option.machine.machine_id)

    def provision_key(self, machine: MachineRecord, tracker) -> Tuple:
        return (-machine.memory_capacity, machine.machine_id)
