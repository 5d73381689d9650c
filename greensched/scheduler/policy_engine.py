import pandas as pd
from typing import Callable, Collection, Dict, List, Optional
from dataclasses import dataclass, field
from enum import Enum
import logging

from greensched.config import (
    DEFAULT_STRATEGY,
    IDLE_GRACE_PERIOD,
    CONTAINER_TASK_LIMIT,
    CONTAINER_MEMORY_OVERHEAD,
    MAX_OFFLOAD_ATTEMPTS,
    MIN_WARM_MACHINES,
    CONSOLIDATION_THRESHOLD,
    TIME_UNIT,
)
from greensched.models.cluster_api import ClusterAPI, ClusterCommandError, SLAClass
from greensched.models.machine import MachineRecord, PendingWake
from greensched.models.placement import PlacementDecision, DecisionKind
from greensched.models.strategies import build_strategy
from greensched.models.task import TaskRecord
from greensched.scheduler.cluster_state import ClusterStateTracker
from greensched.scheduler.offload import OffloadEngine
from greensched.scheduler.power_manager import PowerManager

logger = logging.getLogger(__name__)


class EngineState(Enum):
    """Lifecycle of the policy engine"""
    INITIALIZED = "INITIALIZED"
    RUNNING = "RUNNING"
    STOPPED = "STOPPED"


class PlacementOutcome(Enum):
    """Result tag of a placement call"""
    ASSIGNED = "ASSIGNED"
    PROVISION_PENDING = "PROVISION_PENDING"
    DEFERRED = "DEFERRED"
    FAILED = "FAILED"


PLACED_OUTCOMES = (PlacementOutcome.ASSIGNED, PlacementOutcome.PROVISION_PENDING)


@dataclass
class PlacementResult:
    """What happened to a task after a placement call"""
    outcome: PlacementOutcome
    machine_id: Optional[int] = None
    container_id: Optional[int] = None
    reason: str = ""

    @property
    def placed(self) -> bool:
        return self.outcome in PLACED_OUTCOMES


@dataclass
class SchedulerConfig:
    """Configuration for the policy engine"""
    strategy: str = DEFAULT_STRATEGY
    idle_grace_period: float = IDLE_GRACE_PERIOD
    container_task_limit: int = CONTAINER_TASK_LIMIT
    container_memory_overhead: int = CONTAINER_MEMORY_OVERHEAD
    max_offload_attempts: int = MAX_OFFLOAD_ATTEMPTS
    high_priority_provisioning: bool = True
    min_warm_machines: int = MIN_WARM_MACHINES
    consolidation_threshold: int = CONSOLIDATION_THRESHOLD

    def validate(self) -> None:
        if self.idle_grace_period < 0:
            raise ValueError(f"idle_grace_period must be non-negative, got {self.idle_grace_period}")
        if self.container_task_limit < 1:
            raise ValueError(f"container_task_limit must be at least 1, got {self.container_task_limit}")
        if self.container_memory_overhead < 0:
            raise ValueError(
                f"container_memory_overhead must be non-negative, got {self.container_memory_overhead}"
            )
        if self.max_offload_attempts < 0:
            raise ValueError(f"max_offload_attempts must be non-negative, got {self.max_offload_attempts}")


@dataclass
class ShutdownSummary:
    """End-of-run report; SLA and energy figures come from the collaborator"""
    time: float
    sla_violations: Dict[str, float]
    cluster_energy: float
    unplaced_tasks: List[int] = field(default_factory=list)
    forced_violations: Dict[int, str] = field(default_factory=dict)


class PolicyEngine:
    """
    Event-driven placement and power-management engine.

    The collaborator's clock calls the on_* handlers strictly one at a time.
    Each handler runs to completion and never raises: errors are logged and
    the event is dropped so the surrounding simulation keeps going.
    """

    def __init__(self, cluster: ClusterAPI, config: Optional[SchedulerConfig] = None):
        """
        Initialize the engine.

        Args:
            cluster: Collaborator owning machines, containers and metering
            config: Engine configuration
        """
        self.config = config or SchedulerConfig()
        self.config.validate()
        self.state = EngineState.INITIALIZED

        self.cluster = cluster
        self.tracker = ClusterStateTracker(
            container_task_limit=self.config.container_task_limit,
            container_memory_overhead=self.config.container_memory_overhead
        )
        self.placement_policy, self.power_policy = build_strategy(self.config)
        self.power_manager = PowerManager(cluster, self.tracker, self.power_policy)
        self.offload = OffloadEngine(
            self.tracker,
            self.placement_policy,
            max_attempts=self.config.max_offload_attempts
        )

        self.forced_violations: Dict[int, str] = {}
        self.placement_history: List[Dict] = []

    # Inbound event surface

    def on_init(self) -> None:
        self._dispatch("on_init", self._handle_init)

    def on_new_task(self, time: float, task_id: int) -> Optional[PlacementResult]:
        return self._dispatch("on_new_task", self._handle_new_task, time, task_id)

    def on_task_complete(self, time: float, task_id: int) -> None:
        self._dispatch("on_task_complete", self._handle_task_complete, time, task_id)

    def on_periodic_check(self, time: float) -> None:
        self._dispatch("on_periodic_check", self._handle_periodic_check, time)

    def on_migration_complete(self, time: float, container_id: int) -> None:
        self._dispatch("on_migration_complete", self._handle_migration_complete, time, container_id)

    def on_machine_ready(self, time: float, machine_id: int) -> None:
        self._dispatch("on_machine_ready", self._handle_machine_ready, time, machine_id)

    def on_memory_warning(self, time: float, machine_id: int) -> None:
        self._dispatch("on_memory_warning", self._handle_memory_warning, time, machine_id)

    def on_sla_warning(self, time: float, task_id: int) -> None:
        self._dispatch("on_sla_warning", self._handle_sla_warning, time, task_id)

    def on_shutdown(self, time: float) -> Optional[ShutdownSummary]:
        return self._dispatch("on_shutdown", self._handle_shutdown, time)

    def _dispatch(self, name: str, handler: Callable, *args):
        if self.state == EngineState.STOPPED:
            logger.warning(f"{name} received after shutdown, ignoring")
            return None
        if self.state == EngineState.INITIALIZED and handler != self._handle_init:
            logger.warning(f"{name} received before on_init, initializing now")
            self.on_init()
        try:
            return handler(*args)
        except Exception as e:
            logger.error(f"Error in {name}: {str(e)}")
            return None

    # Handlers

    def _handle_init(self) -> None:
        if self.state != EngineState.INITIALIZED:
            logger.warning("on_init received twice, ignoring")
            return
        logger.info("Initializing policy engine")
        total = self.cluster.get_total_machines()
        for machine_id in range(total):
            info = self.cluster.get_machine_info(machine_id)
            self.tracker.add_machine(MachineRecord.from_descriptor(info))
        self._refresh_energy()

        for machine in self.tracker.machines.values():
            if machine.is_running:
                self.power_manager.set_max_performance(machine.machine_id)
                self.power_manager.note_load(machine.machine_id, 0.0)

        self.state = EngineState.RUNNING
        logger.info(f"Tracking {total} machines with strategy {self.config.strategy}")

    def _handle_new_task(self, time: float, task_id: int) -> PlacementResult:
        descriptor = self.cluster.get_task_info(task_id)
        task = TaskRecord.from_descriptor(descriptor, arrival_time=time)
        self.tracker.add_task(task)
        logger.debug(
            f"New task {task_id} at {time}: {task.cpu_type.value}/{task.vm_type.value}, "
            f"{task.memory} MB, SLA{int(task.sla)}"
        )
        return self.place(task_id, time)

    def _handle_task_complete(self, time: float, task_id: int) -> None:
        machine_id = self.tracker.record_completion(task_id)
        if machine_id is None:
            return
        logger.debug(f"Task {task_id} completed on machine {machine_id} at {time}")
        self.power_manager.note_load(machine_id, time)

        cpu_type = self.tracker.machines[machine_id].cpu_type
        self._drain(time, predicate=lambda t: self.tracker.tasks[t].cpu_type == cpu_type)

    def _handle_periodic_check(self, time: float) -> None:
        self._refresh_energy()

        for container_id, target in self.power_policy.consolidation_moves(self.tracker):
            self.migrate_container(container_id, target, time)

        powered_down = self.power_manager.idle_check(time)
        if powered_down:
            logger.info(f"Periodic check at {time}: powered down machines {powered_down}")

        self._drain(time)

    def _handle_migration_complete(self, time: float, container_id: int) -> None:
        moved = self.tracker.complete_migration(container_id)
        if moved is None:
            return
        source, target = moved
        self.power_manager.note_load(source, time)
        self.power_manager.note_load(target, time)
        self._drain(time)

    def _handle_machine_ready(self, time: float, machine_id: int) -> None:
        if not self.power_manager.activate(machine_id, time):
            return

        wakes = self.tracker.pop_pending_wakes(machine_id)
        logger.info(f"Machine {machine_id} ready at {time}, resolving {len(wakes)} pending placements")
        for wake in wakes:
            self._resolve_wake(wake)

        # Containers made for these wakes whose tasks were all re-deferred
        created = {w.container_id for w in wakes if w.created_container}
        for container_id in sorted(created):
            container = self.tracker.containers.get(container_id)
            if container is not None and (not container.attached or container.load == 0):
                self._discard_container(container_id)

        self.power_manager.note_load(machine_id, time)

        cpu_type = self.tracker.machines[machine_id].cpu_type
        self._drain(
            time,
            predicate=lambda t: self.tracker.tasks[t].cpu_type == cpu_type,
            only={machine_id}
        )
        self._drain(time)

    def _handle_memory_warning(self, time: float, machine_id: int) -> None:
        logger.warning(f"Memory warning on machine {machine_id} at {time}")
        self.offload.relieve_machine(machine_id, time, self._relocate)

    def _handle_sla_warning(self, time: float, task_id: int) -> None:
        task = self.tracker.tasks.get(task_id)
        if task is None:
            logger.warning(f"SLA warning for unknown task {task_id}")
            return
        if task_id not in self.tracker.deferred:
            logger.info(f"SLA warning for task {task_id} which is already {task.state.value}")
            return

        logger.info(f"SLA warning for deferred task {task_id}, escalating")
        self.tracker.deferred.remove(task_id)
        result = self.place(task_id, time, urgent=True, defer_on_failure=False)
        if not result.placed:
            self.tracker.deferred.push_front(task_id)

    def _handle_shutdown(self, time: float) -> ShutdownSummary:
        unplaced = list(self.tracker.deferred) + [
            w.task_id for wakes in self.tracker.pending_wakes.values() for w in wakes
        ]
        for task_id in unplaced:
            logger.warning(f"Task {task_id} was never placed, counting it as an SLA violation")

        summary = ShutdownSummary(
            time=time,
            sla_violations={sla.name: self.cluster.get_sla_report(sla) for sla in SLAClass},
            cluster_energy=self.cluster.get_cluster_energy(),
            unplaced_tasks=unplaced,
            forced_violations=dict(self.forced_violations)
        )

        logger.info("SLA violation report")
        for name, pct in summary.sla_violations.items():
            logger.info(f"{name}: {pct:.2f}%")
        logger.info(f"Total Energy {summary.cluster_energy:.4f} KW-Hour")
        logger.info(f"Simulation run finished in {time / TIME_UNIT:.2f} seconds")

        self.power_manager.power_off_all(time)
        self.state = EngineState.STOPPED
        return summary

    # Placement

    def place(self,
              task_id: int,
              now: float,
              exclude: Collection[int] = (),
              only: Optional[Collection[int]] = None,
              urgent: Optional[bool] = None,
              allow_offload: bool = True,
              defer_on_failure: bool = True) -> PlacementResult:
        """
        Find a home for a task and commit it.

        Args:
            task_id: Task to place
            now: Current time
            exclude: Machines that must not be used
            only: Restrict candidates to these machines
            urgent: Override the task's SLA urgency
            allow_offload: Try to free room on a pressured host when full
            defer_on_failure: Push the task onto the deferral queue if unplaced

        Returns:
            PlacementResult tagged ASSIGNED, PROVISION_PENDING, DEFERRED or FAILED
        """
        task = self.tracker.tasks[task_id]
        decision = self.placement_policy.select(task, self.tracker, exclude=exclude, only=only, urgent=urgent)

        if decision.feasible:
            try:
                result = self._commit(task, decision, now)
            except ClusterCommandError as e:
                logger.error(f"Failed to commit placement of task {task_id}: {str(e)}")
                result = PlacementResult(PlacementOutcome.DEFERRED, reason=str(e))
        elif decision.kind == DecisionKind.UNREACHABLE:
            self._force_violation(task_id, decision.reason)
            result = PlacementResult(PlacementOutcome.FAILED, reason=decision.reason)
        elif not allow_offload:
            result = PlacementResult(PlacementOutcome.DEFERRED, reason=decision.reason)
        else:
            result = self._offload_and_retry(task, decision, now, exclude)

        if not result.placed and defer_on_failure:
            self.tracker.defer(task_id)
        self._record_placement(now, task_id, result)
        return result

    def _offload_and_retry(self,
                           task: TaskRecord,
                           decision: PlacementDecision,
                           now: float,
                           exclude: Collection[int]) -> PlacementResult:
        if not self.offload.could_fit(task):
            reason = f"needs {task.memory} MB, more than any {task.cpu_type.value} machine holds"
            self._force_violation(task.task_id, reason)
            return PlacementResult(PlacementOutcome.FAILED, reason=reason)

        deferred = PlacementResult(PlacementOutcome.DEFERRED, reason=decision.reason)
        if self.offload.active or self.config.max_offload_attempts == 0:
            return deferred

        retried: List[PlacementResult] = []

        def retry() -> bool:
            result = self.place(task.task_id, now, exclude=exclude, allow_offload=False, defer_on_failure=False)
            retried.append(result)
            return result.placed

        placed, attempts = self.offload.relieve_for(task, now, self._relocate, retry)
        if placed:
            return retried[-1]
        if attempts == 0:
            return deferred

        reason = f"{decision.reason}; {attempts} offload attempts failed"
        self._force_violation(task.task_id, reason)
        return PlacementResult(PlacementOutcome.FAILED, reason=reason)

    def _commit(self, task: TaskRecord, decision: PlacementDecision, now: float) -> PlacementResult:
        machine_id = decision.machine_id

        if decision.kind == DecisionKind.USE_CONTAINER:
            return self._assign(task, decision.container_id, machine_id, now)

        if decision.kind == DecisionKind.NEW_CONTAINER:
            vm_id = self.cluster.create_vm(task.vm_type, task.cpu_type)
            try:
                self.cluster.attach_vm(vm_id, machine_id)
            except ClusterCommandError:
                self._discard_vm(vm_id)
                raise
            self.tracker.add_container(vm_id, task.vm_type, task.cpu_type, machine_id)
            try:
                return self._assign(task, vm_id, machine_id, now)
            except ClusterCommandError:
                self._discard_container(vm_id)
                raise

        if decision.kind == DecisionKind.PROVISION:
            self.power_manager.provision(machine_id, now)

        # PROVISION and JOIN_WAKE both wait for the machine-ready event
        container_id = decision.container_id
        created = container_id is None
        if created:
            container_id = self.cluster.create_vm(task.vm_type, task.cpu_type)
            self.tracker.add_container(container_id, task.vm_type, task.cpu_type, machine_id, attached=False)
        self.tracker.add_pending_wake(PendingWake(machine_id, container_id, task.task_id, created))
        logger.info(f"Task {task.task_id} waiting for machine {machine_id} to wake up")
        return PlacementResult(PlacementOutcome.PROVISION_PENDING, machine_id, container_id)

    def _assign(self, task: TaskRecord, container_id: int, machine_id: int, now: float) -> PlacementResult:
        self.cluster.add_task(container_id, task.task_id, task.priority)
        self.tracker.record_assignment(task.task_id, container_id, machine_id)
        self.power_manager.note_load(machine_id, now)
        return PlacementResult(PlacementOutcome.ASSIGNED, machine_id, container_id)

    def _resolve_wake(self, wake: PendingWake) -> None:
        task = self.tracker.tasks.get(wake.task_id)
        if task is None:
            logger.warning(f"Pending wake for unknown task {wake.task_id}, dropping it")
            return
        container = self.tracker.containers.get(wake.container_id)
        if container is None:
            logger.warning(f"Pending wake for task {wake.task_id} lost its container, deferring")
            self.tracker.defer(wake.task_id)
            return

        try:
            if not container.attached:
                self.cluster.attach_vm(container.container_id, wake.machine_id)
                self.tracker.attach_container(container.container_id)

            info = self.cluster.get_machine_info(wake.machine_id)
            fits = (
                container.load < self.tracker.container_task_limit
                and task.memory <= self.tracker.memory_available(wake.machine_id)
                and info.memory_used + task.memory <= info.memory_size
            )
            if not fits:
                logger.info(f"Task {wake.task_id} no longer fits on machine {wake.machine_id}, deferring")
                self.tracker.defer(wake.task_id)
                return

            self.cluster.add_task(container.container_id, task.task_id, task.priority)
            self.tracker.record_assignment(task.task_id, container.container_id, wake.machine_id)
        except ClusterCommandError as e:
            logger.error(f"Could not resolve pending placement of task {wake.task_id}: {str(e)}")
            self.tracker.defer(wake.task_id)

    def _relocate(self, task_id: int, decision: PlacementDecision, now: float) -> bool:
        """Move an assigned task to the home described by `decision`"""
        container_id = self.tracker.assignments.get(task_id)
        if container_id is None:
            logger.warning(f"Cannot relocate task {task_id}: it holds no assignment")
            return False
        try:
            self.cluster.remove_task(container_id, task_id)
        except ClusterCommandError as e:
            logger.error(f"Could not remove task {task_id} from container {container_id}: {str(e)}")
            return False

        origin = self.tracker.record_removal(task_id)
        self.power_manager.note_load(origin, now)

        task = self.tracker.tasks[task_id]
        try:
            result = self._commit(task, decision, now)
        except ClusterCommandError as e:
            logger.error(f"Could not move task {task_id} off machine {origin}: {str(e)}")
            self.tracker.defer(task_id)
            return False
        logger.info(f"Moved task {task_id} from machine {origin} to machine {result.machine_id}")
        return True

    def _drain(self,
               now: float,
               predicate: Optional[Callable[[int], bool]] = None,
               only: Optional[Collection[int]] = None) -> List[int]:
        if not len(self.tracker.deferred):
            return []

        def retry(task_id: int) -> bool:
            if task_id not in self.tracker.tasks:
                logger.warning(f"Dropping unknown task {task_id} from the deferral queue")
                return True
            try:
                result = self.place(task_id, now, only=only, allow_offload=False, defer_on_failure=False)
            except Exception as e:
                logger.error(f"Error retrying task {task_id}: {str(e)}")
                # Leaves the queue only if it got a home before the failure
                return task_id in self.tracker.assignments or self.tracker.is_pending(task_id)
            return result.placed

        return self.tracker.deferred.drain(retry, predicate=predicate)

    # Consolidation

    def migrate_container(self, container_id: int, target_machine_id: int, now: float) -> bool:
        """
        Start moving a container to another machine.

        Returns:
            True if the migration was issued
        """
        try:
            self.cluster.migrate_vm(container_id, target_machine_id)
        except ClusterCommandError as e:
            logger.error(f"Could not migrate container {container_id}: {str(e)}")
            return False
        self.tracker.begin_migration(container_id, target_machine_id)
        logger.info(f"Migrating container {container_id} to machine {target_machine_id} at {now}")
        return True

    # Helpers

    def _refresh_energy(self) -> None:
        self.tracker.refresh_energy({
            machine_id: self.cluster.get_machine_energy(machine_id)
            for machine_id in self.tracker.machines
        })

    def _force_violation(self, task_id: int, reason: str) -> None:
        if task_id in self.forced_violations:
            return
        self.forced_violations[task_id] = reason
        logger.warning(f"Task {task_id} cannot be placed ({reason}), reporting an SLA violation")

    def _discard_vm(self, vm_id: int) -> None:
        try:
            self.cluster.shutdown_vm(vm_id)
        except ClusterCommandError as e:
            logger.warning(f"Could not shut down container {vm_id}: {str(e)}")

    def _discard_container(self, container_id: int) -> None:
        self._discard_vm(container_id)
        self.tracker.remove_container(container_id)

    def _record_placement(self, now: float, task_id: int, result: PlacementResult) -> None:
        self.placement_history.append({
            'time': now,
            'task_id': task_id,
            'outcome': result.outcome.value,
            'machine_id': result.machine_id,
            'container_id': result.container_id,
            'reason': result.reason
        })

    def get_placement_history(self) -> pd.DataFrame:
        """
        Get history of placement calls.

        Returns:
            DataFrame containing placement outcomes
        """
        return pd.DataFrame(self.placement_history)
