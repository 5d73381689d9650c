import pandas as pd
import numpy as np
from typing import Dict, List, Optional
import logging

from greensched.config import TIME_UNIT

logger = logging.getLogger(__name__)


class SimulationMetrics:
    """
    Computes and tracks performance metrics for a simulation run.

    Times are recorded in simulated microseconds and reported in seconds.
    """

    def __init__(self):
        """Initialize metrics tracking"""
        self.metrics_history: List[Dict] = []
        self.task_history: Dict[int, Dict] = {}

    def record_task_event(self,
                          task_id: int,
                          event_type: str,
                          timestamp: float,
                          task_info: Optional[Dict] = None) -> None:
        """
        Record a task lifecycle event.

        Args:
            task_id: Task identifier
            event_type: Type of event (submit, schedule, complete)
            timestamp: Event time in microseconds
            task_info: Additional task information
        """
        if task_id not in self.task_history:
            self.task_history[task_id] = {
                'submit_time': None,
                'schedule_time': None,
                'completion_time': None,
                'status': None,
                'waiting_time': None,
                'execution_time': None,
                'info': task_info or {}
            }

        task = self.task_history[task_id]

        if event_type == 'submit':
            task['submit_time'] = timestamp
        elif event_type == 'schedule':
            task['schedule_time'] = timestamp
            if task['submit_time'] is not None:
                task['waiting_time'] = (timestamp - task['submit_time']) / TIME_UNIT
        elif event_type == 'complete':
            task['completion_time'] = timestamp
            task['status'] = event_type
            if task['schedule_time'] is not None:
                task['execution_time'] = (timestamp - task['schedule_time']) / TIME_UNIT
        else:
            logger.warning(f"Unknown task event {event_type} for task {task_id}")

    def record_metrics(self,
                       timestamp: float,
                       running_machines: int,
                       waking_machines: int,
                       running_tasks: int,
                       deferred_tasks: int,
                       completed_tasks: int,
                       cluster_energy: float) -> None:
        """
        Record a point-in-time snapshot of the cluster.

        Args:
            timestamp: Snapshot time in microseconds
            running_machines: Machines able to take work
            waking_machines: Machines powering on
            running_tasks: Tasks currently assigned
            deferred_tasks: Tasks waiting in the deferral queue
            completed_tasks: Tasks finished so far
            cluster_energy: Cumulative energy in kWh
        """
        self.metrics_history.append({
            'timestamp': timestamp / TIME_UNIT,
            'running_machines': running_machines,
            'waking_machines': waking_machines,
            'running_tasks': running_tasks,
            'deferred_tasks': deferred_tasks,
            'completed_tasks': completed_tasks,
            'cluster_energy': cluster_energy
        })

    def compute_task_statistics(self) -> Dict[str, float]:
        """
        Compute statistics about task execution.

        Returns:
            Dictionary containing task statistics
        """
        waiting_times = [t['waiting_time'] for t in self.task_history.values() if t['waiting_time'] is not None]
        execution_times = [
            t['execution_time'] for t in self.task_history.values() if t['execution_time'] is not None
        ]
        completed_tasks = sum(1 for t in self.task_history.values() if t['status'] == 'complete')
        total_tasks = len(self.task_history)

        return {
            'avg_waiting_time': float(np.mean(waiting_times)) if waiting_times else 0.0,
            'median_waiting_time': float(np.median(waiting_times)) if waiting_times else 0.0,
            'p95_waiting_time': float(np.percentile(waiting_times, 95)) if waiting_times else 0.0,
            'avg_execution_time': float(np.mean(execution_times)) if execution_times else 0.0,
            'completion_rate': completed_tasks / total_tasks if total_tasks > 0 else 0.0
        }

    def compute_resource_statistics(self) -> Dict[str, float]:
        """
        Compute statistics about machine usage.

        Returns:
            Dictionary containing resource statistics
        """
        metrics_df = pd.DataFrame(self.metrics_history)
        if metrics_df.empty:
            return {}

        return {
            'avg_running_machines': metrics_df['running_machines'].mean(),
            'max_running_machines': metrics_df['running_machines'].max(),
            'avg_deferred_tasks': metrics_df['deferred_tasks'].mean(),
            'max_deferred_tasks': metrics_df['deferred_tasks'].max(),
            'final_energy': metrics_df['cluster_energy'].iloc[-1]
        }

    def get_full_report(self,
                        sla_violations: Optional[Dict[str, float]] = None,
                        cluster_energy: Optional[float] = None) -> Dict[str, float]:
        """
        Generate a flat performance report.

        Args:
            sla_violations: Violation percentage per SLA class
            cluster_energy: Total energy at shutdown

        Returns:
            Dictionary containing all metrics
        """
        report = {}
        report.update(self.compute_task_statistics())
        report.update(self.compute_resource_statistics())
        for name, pct in (sla_violations or {}).items():
            report[f'{name.lower()}_violation_pct'] = pct
        if cluster_energy is not None:
            report['total_energy_kwh'] = cluster_energy
        report['total_tasks'] = len(self.task_history)
        return report

    def get_metrics_history(self) -> pd.DataFrame:
        return pd.DataFrame(self.metrics_history)

    def get_task_history(self) -> pd.DataFrame:
        return pd.DataFrame.from_dict(self.task_history, orient='index')

    def save_metrics(self, output_dir: str, prefix: str = "") -> None:
        """
        Save metrics to files.

        Args:
            output_dir: Directory to save metric files
            prefix: Prepended to every file name
        """
        self.get_metrics_history().to_csv(f"{output_dir}/{prefix}metrics_history.csv", index=False)
        self.get_task_history().drop(columns=['info'], errors='ignore').to_csv(
            f"{output_dir}/{prefix}task_history.csv"
        )
