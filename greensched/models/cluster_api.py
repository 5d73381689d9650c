from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import List, Optional


class CPUType(Enum):
    """Instruction set a machine provides and a task requires"""
    X86 = "X86"
    ARM = "ARM"
    POWER = "POWER"
    RISCV = "RISCV"


class VMType(Enum):
    """Container (VM) flavour a task must run in"""
    LINUX = "LINUX"
    LINUX_RT = "LINUX_RT"
    WIN = "WIN"
    AIX = "AIX"


class SLAClass(IntEnum):
    """SLA tiers, lower is more urgent"""
    SLA0 = 0
    SLA1 = 1
    SLA2 = 2
    SLA3 = 3


class Priority(IntEnum):
    """Priority a task is submitted with inside its container"""
    HIGH = 0
    MID = 1
    LOW = 2


class SState(Enum):
    """Hardware power state of a machine"""
    S0 = "S0"  # fully on
    S5 = "S5"  # powered off


class PState(IntEnum):
    """Core performance level, P0 is the fastest"""
    P0 = 0
    P1 = 1
    P2 = 2
    P3 = 3


class ClusterCommandError(RuntimeError):
    """Raised by the collaborator when a command cannot be carried out"""
    pass


@dataclass
class TaskDescriptor:
    """Requirements of a task as reported by the collaborator"""
    task_id: int
    cpu_type: CPUType
    vm_type: VMType
    memory: int
    sla: SLAClass
    priority: Priority = Priority.MID


@dataclass
class MachineDescriptor:
    """Point-in-time view of a machine"""
    machine_id: int
    cpu_type: CPUType
    num_cores: int
    memory_size: int
    memory_used: int
    s_state: SState
    mips: int
    p_state: PState = PState.P0
    active_tasks: int = 0
    active_vms: int = 0
    energy_consumed: float = 0.0


@dataclass
class VMDescriptor:
    """Point-in-time view of a container"""
    vm_id: int
    vm_type: VMType
    cpu_type: CPUType
    machine_id: Optional[int] = None
    active_tasks: List[int] = field(default_factory=list)


class ClusterAPI(ABC):
    """
    Command/query surface the policy engine drives.

    Implemented by whatever owns the machines: a simulator, a test fake or a
    real control plane. Commands raise ClusterCommandError on failure.
    """

    # Queries

    @abstractmethod
    def get_task_info(self, task_id: int) -> TaskDescriptor:
        pass

    @abstractmethod
    def get_machine_info(self, machine_id: int) -> MachineDescriptor:
        pass

    @abstractmethod
    def get_vm_info(self, vm_id: int) -> VMDescriptor:
        pass

    @abstractmethod
    def get_total_machines(self) -> int:
        pass

    @abstractmethod
    def get_machine_energy(self, machine_id: int) -> float:
        pass

    @abstractmethod
    def get_cluster_energy(self) -> float:
        pass

    @abstractmethod
    def get_sla_report(self, sla: SLAClass) -> float:
        """Percentage of completed tasks of this class that missed their SLA"""
        pass

    # Commands

    @abstractmethod
    def create_vm(self, vm_type: VMType, cpu_type: CPUType) -> int:
        pass

    @abstractmethod
    def attach_vm(self, vm_id: int, machine_id: int) -> None:
        pass

    @abstractmethod
    def add_task(self, vm_id: int, task_id: int, priority: Priority) -> None:
        pass

    @abstractmethod
    def remove_task(self, vm_id: int, task_id: int) -> None:
        pass

    @abstractmethod
    def migrate_vm(self, vm_id: int, machine_id: int) -> None:
        pass

    @abstractmethod
    def set_machine_state(self, machine_id: int, s_state: SState) -> None:
        pass

    @abstractmethod
    def set_core_performance(self, machine_id: int, core: int, p_state: PState) -> None:
        pass

    @abstractmethod
    def shutdown_vm(self, vm_id: int) -> None:
        pass
