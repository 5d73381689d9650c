# greensched/models/task.py

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from greensched.models.cluster_api import CPUType, VMType, SLAClass, Priority, TaskDescriptor


class TaskState(Enum):
    """Possible states for a task"""
    PENDING = "PENDING"      # waiting on a machine wake
    DEFERRED = "DEFERRED"    # sitting in the deferral queue
    ASSIGNED = "ASSIGNED"
    COMPLETED = "COMPLETED"


@dataclass
class TaskRecord:
    """Information about a task the engine is tracking"""
    task_id: int
    cpu_type: CPUType
    vm_type: VMType
    memory: int
    sla: SLAClass
    priority: Priority
    arrival_time: float = 0.0
    state: TaskState = TaskState.PENDING
    container_id: Optional[int] = None

    @classmethod
    def from_descriptor(cls, descriptor: TaskDescriptor, arrival_time: float = 0.0) -> "TaskRecord":
        return cls(
            task_id=descriptor.task_id,
            cpu_type=descriptor.cpu_type,
            vm_type=descriptor.vm_type,
            memory=descriptor.memory,
            sla=descriptor.sla,
            priority=descriptor.priority,
            arrival_time=arrival_time
        )

    @property
    def is_urgent(self) -> bool:
        return self.sla == SLAClass.SLA0
