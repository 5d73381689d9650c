import numpy as np
import pandas as pd
from typing import Dict, List, Optional, Sequence
import logging

from greensched.models.cluster_api import CPUType, VMType, SLAClass, Priority
from greensched.sim_cluster import MachineSpec, WorkloadTask

logger = logging.getLogger(__name__)

# VM flavours each CPU type can run
COMPATIBLE_VMS: Dict[CPUType, List[VMType]] = {
    CPUType.X86: [VMType.LINUX, VMType.LINUX_RT, VMType.WIN],
    CPUType.ARM: [VMType.LINUX, VMType.LINUX_RT, VMType.WIN],
    CPUType.POWER: [VMType.LINUX, VMType.LINUX_RT, VMType.AIX],
    CPUType.RISCV: [VMType.LINUX, VMType.LINUX_RT],
}

# Machine archetypes: (cores, memory MB, mips, idle watts, max watts)
MACHINE_CLASSES = [
    (8, 16_384, 1000, 80.0, 200.0),
    (16, 32_768, 1500, 120.0, 320.0),
    (32, 65_536, 2000, 180.0, 480.0),
]

MEMORY_CHOICES = [256, 512, 1024, 2048, 4096]
SLA_WEIGHTS = [0.1, 0.3, 0.3, 0.3]


def generate_machines(machines_per_type: int,
                      cpu_types: Sequence[CPUType] = (CPUType.X86, CPUType.ARM),
                      powered_on_fraction: float = 0.5,
                      seed: Optional[int] = None) -> List[MachineSpec]:
    """
    Build a heterogeneous fleet.

    Args:
        machines_per_type: Machines generated for each CPU type
        cpu_types: CPU types present in the fleet
        powered_on_fraction: Share of machines that start in S0
        seed: Random seed

    Returns:
        List of machine specs, grouped by CPU type
    """
    rng = np.random.default_rng(seed)
    specs = []
    for cpu_type in cpu_types:
        classes = rng.integers(0, len(MACHINE_CLASSES), size=machines_per_type)
        powered = rng.random(machines_per_type) < powered_on_fraction
        for cls, on in zip(classes, powered):
            cores, memory, mips, idle, peak = MACHINE_CLASSES[int(cls)]
            specs.append(MachineSpec(
                cpu_type=cpu_type,
                num_cores=cores,
                memory_size=memory,
                mips=mips,
                idle_power=idle,
                max_power=peak,
                powered_on=bool(on)
            ))
    logger.info(f"Generated {len(specs)} machines across {len(cpu_types)} CPU types")
    return specs


def generate_workload(n_tasks: int,
                      cpu_types: Sequence[CPUType] = (CPUType.X86, CPUType.ARM),
                      mean_interarrival: float = 20_000,
                      mean_work: float = 500_000,
                      seed: Optional[int] = None) -> List[WorkloadTask]:
    """
    Generate a Poisson arrival stream of tasks.

    Args:
        n_tasks: Number of tasks
        cpu_types: CPU types tasks may require
        mean_interarrival: Mean gap between arrivals in microseconds
        mean_work: Mean task work in microseconds at reference speed
        seed: Random seed

    Returns:
        Tasks sorted by arrival time
    """
    rng = np.random.default_rng(seed)
    arrivals = np.cumsum(rng.exponential(mean_interarrival, size=n_tasks))
    work = np.maximum(rng.exponential(mean_work, size=n_tasks), 1_000.0)
    cpu_idx = rng.integers(0, len(cpu_types), size=n_tasks)
    memory = rng.choice(MEMORY_CHOICES, size=n_tasks)
    slas = rng.choice(len(SLAClass), size=n_tasks, p=SLA_WEIGHTS)
    priorities = rng.integers(0, len(Priority), size=n_tasks)

    tasks = []
    for i in range(n_tasks):
        cpu_type = cpu_types[int(cpu_idx[i])]
        vms = COMPATIBLE_VMS[cpu_type]
        tasks.append(WorkloadTask(
            task_id=i,
            arrival_time=float(arrivals[i]),
            cpu_type=cpu_type,
            vm_type=vms[int(rng.integers(0, len(vms)))],
            memory=int(memory[i]),
            sla=SLAClass(int(slas[i])),
            work=float(work[i]),
            priority=Priority(int(priorities[i]))
        ))
    logger.info(f"Generated {n_tasks} tasks over {arrivals[-1] if n_tasks else 0:.0f} microseconds")
    return tasks


def workload_to_frame(tasks: List[WorkloadTask]) -> pd.DataFrame:
    return pd.DataFrame([{
        'task_id': t.task_id,
        'arrival_time': t.arrival_time,
        'cpu_type': t.cpu_type.value,
        'vm_type': t.vm_type.value,
        'memory': t.memory,
        'sla': int(t.sla),
        'work': t.work,
        'priority': int(t.priority)
    } for t in tasks])
