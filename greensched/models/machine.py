# greensched/models/machine.py

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Set

from greensched.models.cluster_api import CPUType, VMType, SState, MachineDescriptor


class PowerState(Enum):
    """Power states tracked for each machine"""
    ACTIVE = "ACTIVE"
    WAKING_UP = "WAKING_UP"
    IDLE_PENDING = "IDLE_PENDING"
    OFF = "OFF"


# States in which a machine can take work right now
RUNNING_STATES = (PowerState.ACTIVE, PowerState.IDLE_PENDING)


@dataclass
class MachineRecord:
    """Cached view of a machine; load and memory are derived from its containers"""
    machine_id: int
    cpu_type: CPUType
    memory_capacity: int
    num_cores: int
    mips: int
    power_state: PowerState = PowerState.OFF
    energy: float = 0.0
    idle_since: Optional[float] = None
    containers: Set[int] = field(default_factory=set)

    @classmethod
    def from_descriptor(cls, descriptor: MachineDescriptor) -> "MachineRecord":
        if descriptor.s_state == SState.S0:
            power_state = PowerState.ACTIVE
        else:
            power_state = PowerState.OFF
        return cls(
            machine_id=descriptor.machine_id,
            cpu_type=descriptor.cpu_type,
            memory_capacity=descriptor.memory_size,
            num_cores=descriptor.num_cores,
            mips=descriptor.mips,
            power_state=power_state,
            energy=descriptor.energy_consumed
        )

    @property
    def is_running(self) -> bool:
        return self.power_state in RUNNING_STATES


@dataclass
class ContainerRecord:
    """A container (VM) hosted on exactly one machine"""
    container_id: int
    vm_type: VMType
    cpu_type: CPUType
    machine_id: int
    tasks: List[int] = field(default_factory=list)
    attached: bool = True
    migrating_to: Optional[int] = None

    @property
    def load(self) -> int:
        return len(self.tasks)

    @property
    def is_migrating(self) -> bool:
        return self.migrating_to is not None


@dataclass
class PendingWake:
    """A placement decided before its target machine finished powering on"""
    machine_id: int
    container_id: int
    task_id: int
    created_container: bool = False
