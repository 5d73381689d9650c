from abc import ABC, abstractmethod
from typing import Dict, List, Set, Tuple
import logging

from greensched.config import IDLE_GRACE_PERIOD, MIN_WARM_MACHINES, CONSOLIDATION_THRESHOLD
from greensched.models.machine import MachineRecord, PowerState

logger = logging.getLogger(__name__)


class PowerPolicy(ABC):
    """
    Decides when idle machines may be switched off.

    The power manager arms and clears idle timers; a policy only answers how
    long a machine must stay idle and whether it may go down at all.
    """

    name = "base"

    def __init__(self, grace_period: float = IDLE_GRACE_PERIOD):
        """
        Initialize the policy.

        Args:
            grace_period: Time a machine must sit at zero load before power-down
        """
        if grace_period < 0:
            raise ValueError(f"grace_period must be non-negative, got {grace_period}")
        self.grace_period = grace_period

    @abstractmethod
    def grace_period_for(self, machine: MachineRecord, tracker) -> float:
        pass

    def may_power_down(self, machine: MachineRecord, tracker) -> bool:
        return True

    def consolidation_moves(self, tracker) -> List[Tuple[int, int]]:
        """
        Propose container migrations that would empty lightly loaded machines.

        Returns:
            List of (container id, target machine id)
        """
        return []


class FixedGracePowerPolicy(PowerPolicy):
    """Power down any machine idle for a fixed grace period"""

    name = "fixed_grace"

    def grace_period_for(self, machine: MachineRecord, tracker) -> float:
        return self.grace_period


class AdaptiveIdlePowerPolicy(PowerPolicy):
    """
    Idle consolidation that reacts to demand.

    The grace period doubles while tasks needing the machine's CPU type are
    deferred, a minimum number of machines per CPU type is kept warm, and
    lightly loaded machines are emptied by migrating their container onto a
    busier machine of the same CPU type.
    """

    name = "adaptive_idle"

    def __init__(self,
                 grace_period: float = IDLE_GRACE_PERIOD,
                 min_warm_machines: int = MIN_WARM_MACHINES,
                 consolidation_threshold: int = CONSOLIDATION_THRESHOLD):
        """
        Initialize the policy.

        Args:
            grace_period: Base idle time before power-down
            min_warm_machines: Machines per CPU type never powered down
            consolidation_threshold: Max load of a machine worth emptying
        """
        super().__init__(grace_period)
        if min_warm_machines < 0:
            raise ValueError(f"min_warm_machines must be non-negative, got {min_warm_machines}")
        self.min_warm_machines = min_warm_machines
        self.consolidation_threshold = consolidation_threshold

    def grace_period_for(self, machine: MachineRecord, tracker) -> float:
        waiting = any(
            tracker.tasks[t].cpu_type == machine.cpu_type for t in tracker.deferred
        )
        if waiting:
            return self.grace_period * 2
        return self.grace_period

    def may_power_down(self, machine: MachineRecord, tracker) -> bool:
        if self.min_warm_machines == 0:
            return True
        warm = [
            m for m in tracker.machines_of_type(machine.cpu_type)
            if m.machine_id != machine.machine_id and m.power_state != PowerState.OFF
        ]
        if len(warm) < self.min_warm_machines:
            logger.debug(f"Keeping machine {machine.machine_id} warm for {machine.cpu_type.value}")
            return False
        return True

    def consolidation_moves(self, tracker) -> List[Tuple[int, int]]:
        busy_hosts: Set[int] = set()
        for container in tracker.migrations_in_flight():
            busy_hosts.add(container.machine_id)
            busy_hosts.add(container.migrating_to)

        sources = []
        for machine in tracker.machines.values():
            if machine.power_state != PowerState.ACTIVE or machine.machine_id in busy_hosts:
                continue
            containers = tracker.containers_on(machine.machine_id)
            load = tracker.load(machine.machine_id)
            if (len(containers) == 1
                    and containers[0].attached
                    and 0 < load <= self.consolidation_threshold):
                sources.append((load, machine))
        sources.sort(key=lambda s: (s[0], s[1].machine_id))

        moves = []
        planned: Dict[int, int] = {}  # extra memory promised to targets this round
        emptied: Set[int] = set()
        for load, source in sources:
            if source.machine_id in planned:
                continue
            container = tracker.containers_on(source.machine_id)[0]
            footprint = tracker.container_footprint(container.container_id)
            targets = sorted(
                (m for m in tracker.machines_of_type(source.cpu_type)
                 if m.power_state == PowerState.ACTIVE
                 and m.machine_id != source.machine_id
                 and m.machine_id not in busy_hosts
                 and m.machine_id not in emptied
                 and tracker.load(m.machine_id) > load),
                key=lambda m: (-tracker.load(m.machine_id), m.machine_id)
            )
            for target in targets:
                free = tracker.memory_available(target.machine_id) - planned.get(target.machine_id, 0)
                if footprint <= free:
                    moves.append((container.container_id, target.machine_id))
                    planned[target.machine_id] = planned.get(target.machine_id, 0) + footprint
                    emptied.add(source.machine_id)
                    logger.debug(
                        f"Consolidating container {container.container_id} from machine "
                        f"{source.machine_id} onto machine {target.machine_id}"
                    )
                    break
        return moves
