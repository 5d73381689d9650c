import pandas as pd
from typing import Callable, Dict, List, Optional, Set, Tuple
import logging

from greensched.config import MAX_OFFLOAD_ATTEMPTS
from greensched.models.cluster_api import CPUType
from greensched.models.placement import PlacementPolicy, PlacementDecision, DecisionKind
from greensched.models.task import TaskRecord
from greensched.scheduler.cluster_state import ClusterStateTracker

logger = logging.getLogger(__name__)

# Relocations only go to machines that can run the task immediately
RUNNING_DECISIONS = (DecisionKind.USE_CONTAINER, DecisionKind.NEW_CONTAINER)

Relocate = Callable[[int, PlacementDecision, float], bool]


class OffloadEngine:
    """
    Relieves memory pressure by moving a task off a congested host.

    Used when a placement finds every compatible machine full, and when the
    collaborator raises a memory warning. Attempts are bounded per call and
    the engine refuses to run while it is already offloading.
    """

    def __init__(self,
                 tracker: ClusterStateTracker,
                 policy: PlacementPolicy,
                 max_attempts: int = MAX_OFFLOAD_ATTEMPTS):
        """
        Initialize the Offload Engine.

        Args:
            tracker: Cluster state tracker
            policy: Placement policy used to find a new home for moved tasks
            max_attempts: Relocations tried per placement before giving up
        """
        self.tracker = tracker
        self.policy = policy
        self.max_attempts = max_attempts
        self.offload_history: List[Dict] = []
        self._active = False

    @property
    def active(self) -> bool:
        return self._active

    def pressured_machines(self, cpu_type: Optional[CPUType] = None) -> List[int]:
        """
        Running machines ordered by memory pressure, highest first.

        A machine at or above capacity is skipped: only congested-but-not-full
        hosts are offload candidates.
        """
        candidates = []
        for machine in self.tracker.machines.values():
            if not machine.is_running:
                continue
            if cpu_type is not None and machine.cpu_type != cpu_type:
                continue
            ratio = self.tracker.memory_ratio(machine.machine_id)
            if ratio < 1.0 and self.tracker.load(machine.machine_id) > 0:
                candidates.append((ratio, machine.machine_id))
        candidates.sort(key=lambda c: (-c[0], c[1]))
        return [machine_id for _, machine_id in candidates]

    def choose_victim(self,
                      machine_id: int,
                      needed_memory: int = 0,
                      avoid: Set[int] = frozenset()) -> Optional[Tuple[int, PlacementDecision]]:
        """
        Pick a task on a machine that can be moved somewhere else right now.

        Only tasks whose removal frees at least `needed_memory` qualify. Among
        them the least urgent SLA class goes first, then the largest memory
        request.

        Args:
            machine_id: Machine to take a task from
            needed_memory: Memory the caller hopes to free
            avoid: Further machines the moved task must not land on

        Returns:
            (task id, decision for its new home), or None if nothing can move
        """
        free = self.tracker.memory_available(machine_id)
        tasks = [
            self.tracker.tasks[t]
            for c in self.tracker.containers_on(machine_id)
            if c.attached and not c.is_migrating
            for t in c.tasks
        ]
        tasks = [t for t in tasks if free + t.memory >= needed_memory]
        tasks.sort(key=lambda t: (-int(t.sla), -t.memory, t.task_id))

        for task in tasks:
            decision = self.policy.select(task, self.tracker, exclude={machine_id} | set(avoid))
            if decision.kind in RUNNING_DECISIONS:
                return task.task_id, decision
        return None

    def could_fit(self, task: TaskRecord) -> bool:
        """Whether some machine of the task's CPU type could hold it once empty"""
        needed = task.memory + self.tracker.container_memory_overhead
        return any(m.memory_capacity >= needed for m in self.tracker.machines_of_type(task.cpu_type))

    def _record(self, trigger: str, task_id: Optional[int], origin: int,
                victim: Optional[int], succeeded: bool) -> None:
        self.offload_history.append({
            'trigger': trigger,
            'task_id': task_id,
            'origin_machine': origin,
            'moved_task': victim,
            'succeeded': succeeded
        })

    def relieve_for(self,
                    task: TaskRecord,
                    now: float,
                    relocate: Relocate,
                    retry: Callable[[], bool]) -> Tuple[bool, int]:
        """
        Make room for a task that found every compatible machine full.

        Each attempt moves one task off the most pressured untried machine and
        then retries the original placement.

        Args:
            task: Task that could not be placed
            now: Current time
            relocate: Moves a task according to a decision, returns success
            retry: Re-attempts the original placement, returns success

        Returns:
            Tuple of (whether the original task was placed, attempts made)
        """
        if self._active:
            logger.debug(f"Offload already in progress, not offloading for task {task.task_id}")
            return False, 0
        if not self.could_fit(task):
            logger.info(f"Task {task.task_id} needs {task.memory} MB, more than any machine can free")
            return False, 0

        self._active = True
        try:
            tried: Set[int] = set()
            attempts = 0
            for attempt in range(1, self.max_attempts + 1):
                origins = [m for m in self.pressured_machines(task.cpu_type) if m not in tried]
                if not origins:
                    logger.debug(f"No offload candidates left for task {task.task_id}")
                    break
                origin = origins[0]
                tried.add(origin)
                attempts = attempt

                victim = self.choose_victim(origin, needed_memory=task.memory, avoid=tried)
                if victim is None:
                    logger.debug(f"Offload attempt {attempt} for task {task.task_id}: nothing movable on machine {origin}")
                    self._record('placement', task.task_id, origin, None, False)
                    continue

                victim_id, decision = victim
                moved = relocate(victim_id, decision, now)
                placed = moved and retry()
                self._record('placement', task.task_id, origin, victim_id, placed)
                logger.info(
                    f"Offload attempt {attempt} for task {task.task_id}: moved task {victim_id} "
                    f"off machine {origin}, {'placed' if placed else 'still no room'}"
                )
                if placed:
                    return True, attempts
            return False, attempts
        finally:
            self._active = False

    def relieve_machine(self, machine_id: int, now: float, relocate: Relocate) -> bool:
        """
        Move one task off a machine that reported memory pressure.

        Returns:
            True if a task was moved
        """
        if self._active:
            logger.debug(f"Offload already in progress, ignoring pressure on machine {machine_id}")
            return False
        if machine_id not in self.tracker.machines:
            logger.warning(f"Memory warning for unknown machine {machine_id}")
            return False

        self._active = True
        try:
            victim = self.choose_victim(machine_id)
            if victim is None:
                logger.info(f"Memory pressure on machine {machine_id}, but no task can be moved")
                self._record('memory_warning', None, machine_id, None, False)
                return False
            victim_id, decision = victim
            moved = relocate(victim_id, decision, now)
            self._record('memory_warning', None, machine_id, victim_id, moved)
            return moved
        finally:
            self._active = False

    def get_offload_history(self) -> pd.DataFrame:
        """
        Get history of offload attempts.

        Returns:
            DataFrame containing offload attempts
        """
        return pd.DataFrame(self.offload_history)
