import heapq
import itertools
import math
from typing import List, Optional, Tuple
import logging

from tqdm import tqdm

from greensched.config import PERIODIC_CHECK_INTERVAL, SLA_WARNING_FRACTION
from greensched.models.machine import PowerState
from greensched.scheduler.policy_engine import PolicyEngine, ShutdownSummary
from greensched.sim_cluster import (
    SimulatedCluster,
    WorkloadTask,
    MACHINE_READY,
    MIGRATION_DONE,
    TASK_COMPLETE,
    MEMORY_WARNING,
)
from greensched.utils.metrics import SimulationMetrics

logger = logging.getLogger(__name__)

TASK_ARRIVE = "TASK_ARRIVE"
SLA_WARNING = "SLA_WARNING"
PERIODIC_CHECK = "PERIODIC_CHECK"


class Simulation:
    """
    Discrete-event clock driving a PolicyEngine against a SimulatedCluster.

    Events are kept in a heap ordered by time then insertion order, so events
    at the same instant are delivered in the order they were raised.
    """

    def __init__(self,
                 cluster: SimulatedCluster,
                 engine: PolicyEngine,
                 workload: List[WorkloadTask],
                 check_interval: float = PERIODIC_CHECK_INTERVAL,
                 max_time: Optional[float] = None,
                 show_progress: bool = True):
        """
        Initialize the simulation.

        Args:
            cluster: Simulated collaborator the engine commands
            engine: Policy engine under test
            workload: Tasks to submit
            check_interval: Time between periodic checks
            max_time: Hard stop; by default the run ends once the cluster settles
            show_progress: Display a progress bar over completed tasks
        """
        self.cluster = cluster
        self.engine = engine
        self.workload = sorted(workload, key=lambda t: (t.arrival_time, t.task_id))
        self.check_interval = check_interval
        self.max_time = max_time
        self.show_progress = show_progress

        self.current_time = 0.0
        self.event_queue: List[Tuple[float, int, str, int, Optional[int]]] = []
        self.counter = itertools.count()
        self.metrics = SimulationMetrics()
        self.completed = 0

        # Periodic checks needed after the last task for idle machines to go down
        grace = engine.power_policy.grace_period * 2
        self.settle_checks = int(math.ceil(grace / check_interval)) + 2

        self.cluster.event_sink = self.push_event

    def push_event(self, time: float, event_type: str, target: int, token: Optional[int] = None) -> None:
        heapq.heappush(self.event_queue, (time, next(self.counter), event_type, target, token))

    def _has_work(self) -> bool:
        tracker = self.engine.tracker
        return bool(
            tracker.assignments
            or any(tracker.pending_wakes.values())
            or tracker.migrations_in_flight()
        )

    def _only_checks_left(self) -> bool:
        return all(event[2] == PERIODIC_CHECK for event in self.event_queue)

    def run(self) -> Tuple[Optional[ShutdownSummary], SimulationMetrics]:
        """
        Run the simulation to completion.

        Returns:
            Tuple of (engine shutdown summary, recorded metrics)
        """
        logger.info(
            f"Starting simulation with {len(self.workload)} tasks and "
            f"{self.cluster.get_total_machines()} machines"
        )
        self.engine.on_init()

        for task in self.workload:
            self.cluster.submit_task(task)
            self.push_event(task.arrival_time, TASK_ARRIVE, task.task_id)
            deadline = task.deadline
            if deadline is not None:
                warn_at = task.arrival_time + SLA_WARNING_FRACTION * (deadline - task.arrival_time)
                self.push_event(warn_at, SLA_WARNING, task.task_id)
        self.push_event(self.check_interval, PERIODIC_CHECK, 0)

        pbar = tqdm(total=len(self.workload), desc="Simulating", unit="task", disable=not self.show_progress)
        quiet_checks = 0

        while self.event_queue:
            timestamp, _, event_type, target, token = heapq.heappop(self.event_queue)
            if self.max_time is not None and timestamp > self.max_time:
                logger.warning(f"Reached max_time {self.max_time} with {len(self.event_queue) + 1} events left")
                break

            self.current_time = timestamp
            self.cluster.advance(timestamp)

            if event_type == TASK_ARRIVE:
                task = self.cluster.tasks[target].workload
                self.metrics.record_task_event(target, 'submit', timestamp, {
                    'sla': int(task.sla),
                    'cpu_type': task.cpu_type.value,
                    'memory': task.memory
                })
                self.engine.on_new_task(timestamp, target)

            elif event_type == TASK_COMPLETE:
                if self.cluster.complete_task(target, token, timestamp):
                    self.metrics.record_task_event(target, 'schedule', self.cluster.tasks[target].start_time)
                    self.metrics.record_task_event(target, 'complete', timestamp)
                    self.completed += 1
                    pbar.update(1)
                    self.engine.on_task_complete(timestamp, target)

            elif event_type == MACHINE_READY:
                if self.cluster.finish_wake(target):
                    self.engine.on_machine_ready(timestamp, target)

            elif event_type == MIGRATION_DONE:
                if self.cluster.finish_migration(target):
                    self.engine.on_migration_complete(timestamp, target)

            elif event_type == MEMORY_WARNING:
                self.engine.on_memory_warning(timestamp, target)

            elif event_type == SLA_WARNING:
                if not self.cluster.is_finished(target):
                    self.engine.on_sla_warning(timestamp, target)

            elif event_type == PERIODIC_CHECK:
                self.engine.on_periodic_check(timestamp)
                self._snapshot(timestamp)

                if self._only_checks_left() and not self._has_work():
                    quiet_checks += 1
                else:
                    quiet_checks = 0
                if quiet_checks < self.settle_checks:
                    self.push_event(timestamp + self.check_interval, PERIODIC_CHECK, 0)

            else:
                logger.warning(f"Unknown event type {event_type}")

        pbar.close()
        summary = self.engine.on_shutdown(self.current_time)
        logger.info(f"Simulation finished at {self.current_time} with {self.completed} tasks completed")
        return summary, self.metrics

    def _snapshot(self, timestamp: float) -> None:
        tracker = self.engine.tracker
        self.metrics.record_metrics(
            timestamp=timestamp,
            running_machines=sum(1 for m in tracker.machines.values() if m.is_running),
            waking_machines=sum(1 for m in tracker.machines.values() if m.power_state == PowerState.WAKING_UP),
            running_tasks=len(tracker.assignments),
            deferred_tasks=len(tracker.deferred),
            completed_tasks=self.completed,
            cluster_energy=self.cluster.get_cluster_energy()
        )
