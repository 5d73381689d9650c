import pandas as pd
from typing import Dict, List
import logging

from greensched.models.cluster_api import ClusterAPI, ClusterCommandError, SState, PState
from greensched.models.machine import PowerState
from greensched.models.power_policy import PowerPolicy
from greensched.scheduler.cluster_state import ClusterStateTracker

logger = logging.getLogger(__name__)


class PowerManager:
    """
    Drives machine power transitions: OFF -> WAKING_UP -> ACTIVE -> IDLE_PENDING -> OFF.

    Waking a machine is asynchronous: `provision` only issues the request and
    `activate` runs when the collaborator reports the machine ready. Idle
    timers are armed when a machine's load reaches zero and power-down is
    decided on the periodic check after re-verifying the machine is empty.
    """

    def __init__(self, cluster: ClusterAPI, tracker: ClusterStateTracker, policy: PowerPolicy):
        """
        Initialize the Power Manager.

        Args:
            cluster: Collaborator used to issue power commands
            tracker: Cluster state tracker
            policy: Power policy deciding grace periods and power-down
        """
        self.cluster = cluster
        self.tracker = tracker
        self.policy = policy
        self.power_history: List[Dict] = []

    def _transition(self, machine_id: int, new_state: PowerState, now: float) -> None:
        machine = self.tracker.machines[machine_id]
        old_state = machine.power_state
        machine.power_state = new_state
        self.power_history.append({
            'time': now,
            'machine_id': machine_id,
            'from_state': old_state.value,
            'to_state': new_state.value
        })
        logger.debug(f"Machine {machine_id}: {old_state.value} -> {new_state.value} at {now}")

    def provision(self, machine_id: int, now: float) -> bool:
        """
        Ask the collaborator to power a machine on.

        Args:
            machine_id: Machine to wake
            now: Current time

        Returns:
            True if a wake request was issued; False if the machine is already
            waking (the earlier request stands) or not off
        """
        machine = self.tracker.machines[machine_id]
        if machine.power_state == PowerState.WAKING_UP:
            logger.debug(f"Machine {machine_id} already waking up, not requesting again")
            return False
        if machine.power_state != PowerState.OFF:
            logger.warning(f"Provision requested for machine {machine_id} which is {machine.power_state.value}")
            return False

        self.cluster.set_machine_state(machine_id, SState.S0)
        machine.idle_since = None
        self._transition(machine_id, PowerState.WAKING_UP, now)
        logger.info(f"Waking up machine {machine_id}")
        return True

    def activate(self, machine_id: int, now: float) -> bool:
        """
        Complete a wake: WAKING_UP -> ACTIVE with every core at top performance.

        Returns:
            True if the machine was waking up
        """
        machine = self.tracker.machines.get(machine_id)
        if machine is None:
            logger.warning(f"Ready event for unknown machine {machine_id}")
            return False
        if machine.power_state != PowerState.WAKING_UP:
            logger.warning(f"Ready event for machine {machine_id} which is {machine.power_state.value}")
            return False

        self._transition(machine_id, PowerState.ACTIVE, now)
        self.set_max_performance(machine_id)
        logger.info(f"Machine {machine_id} is up")
        return True

    def set_max_performance(self, machine_id: int) -> None:
        machine = self.tracker.machines[machine_id]
        for core in range(machine.num_cores):
            self.cluster.set_core_performance(machine_id, core, PState.P0)

    def note_load(self, machine_id: int, now: float) -> None:
        """
        Arm or clear the idle timer after a machine's load changed.

        A machine in IDLE_PENDING that picks up work goes straight back to
        ACTIVE with its timer cleared.
        """
        machine = self.tracker.machines.get(machine_id)
        if machine is None or not machine.is_running:
            return

        if self.tracker.load(machine_id) > 0:
            if machine.power_state == PowerState.IDLE_PENDING:
                logger.info(f"Machine {machine_id} picked up work, cancelling idle timer")
                self._transition(machine_id, PowerState.ACTIVE, now)
            machine.idle_since = None
        elif machine.power_state == PowerState.ACTIVE:
            if any(c.migrating_to == machine_id for c in self.tracker.migrations_in_flight()):
                return
            machine.idle_since = now
            self._transition(machine_id, PowerState.IDLE_PENDING, now)
            logger.debug(f"Machine {machine_id} idle since {now}")

    def idle_check(self, now: float) -> List[int]:
        """
        Power down machines that stayed idle for their grace period.

        Each candidate is re-verified at check time, since work may have
        landed on it since the timer was armed.

        Args:
            now: Current time

        Returns:
            Machine ids that were powered down
        """
        for machine in list(self.tracker.machines.values()):
            if machine.power_state == PowerState.ACTIVE and machine.idle_since is None:
                self.note_load(machine.machine_id, now)

        powered_down = []
        for machine in list(self.tracker.machines.values()):
            if machine.power_state != PowerState.IDLE_PENDING or machine.idle_since is None:
                continue
            if now - machine.idle_since < self.policy.grace_period_for(machine, self.tracker):
                continue

            if not self._verify_idle(machine.machine_id):
                logger.info(f"Machine {machine.machine_id} is no longer idle, keeping it on")
                machine.idle_since = None
                self._transition(machine.machine_id, PowerState.ACTIVE, now)
                continue

            if not self.policy.may_power_down(machine, self.tracker):
                continue

            if self.power_down(machine.machine_id, now):
                powered_down.append(machine.machine_id)

        return powered_down

    def _verify_idle(self, machine_id: int) -> bool:
        if self.tracker.load(machine_id) > 0:
            return False
        for container in self.tracker.containers.values():
            if container.migrating_to == machine_id or (
                    container.machine_id == machine_id and container.is_migrating):
                return False

        info = self.cluster.get_machine_info(machine_id)
        if info.active_tasks > 0:
            return False
        for container in self.tracker.containers_on(machine_id):
            if self.cluster.get_vm_info(container.container_id).active_tasks:
                return False
        return True

    def power_down(self, machine_id: int, now: float) -> bool:
        """
        Shut down a machine's containers and switch it off.

        Returns:
            True if the machine is now off
        """
        machine = self.tracker.machines[machine_id]
        try:
            for container in self.tracker.containers_on(machine_id):
                self.cluster.shutdown_vm(container.container_id)
                self.tracker.remove_container(container.container_id)
            self.cluster.set_machine_state(machine_id, SState.S5)
        except ClusterCommandError as e:
            logger.error(f"Failed to power down machine {machine_id}: {str(e)}")
            machine.idle_since = None
            self._transition(machine_id, PowerState.ACTIVE, now)
            return False

        machine.idle_since = None
        self._transition(machine_id, PowerState.OFF, now)
        logger.info(f"Powered down idle machine {machine_id}")
        return True

    def power_off_all(self, now: float) -> None:
        """Switch every machine that is not already off, used at shutdown"""
        for machine in list(self.tracker.machines.values()):
            if machine.power_state == PowerState.OFF:
                continue
            for container in self.tracker.containers_on(machine.machine_id):
                try:
                    self.cluster.shutdown_vm(container.container_id)
                except ClusterCommandError as e:
                    logger.warning(f"Could not shut down container {container.container_id}: {str(e)}")
                self.tracker.remove_container(container.container_id)
            try:
                self.cluster.set_machine_state(machine.machine_id, SState.S5)
            except ClusterCommandError as e:
                logger.warning(f"Could not power off machine {machine.machine_id}: {str(e)}")
            machine.idle_since = None
            self._transition(machine.machine_id, PowerState.OFF, now)

    def get_power_history(self) -> pd.DataFrame:
        """
        Get history of power state transitions.

        Returns:
            DataFrame containing power transitions
        """
        return pd.DataFrame(self.power_history)
