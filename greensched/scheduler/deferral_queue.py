from collections import deque
from typing import Callable, Deque, Iterator, List, Optional, Set
import logging

logger = logging.getLogger(__name__)


class DeferralQueue:
    """
    FIFO of task ids that could not be placed when they were last tried.

    Membership is mirrored in a set so the engine can check "is this task
    deferred" in constant time. A task id appears at most once.
    """

    def __init__(self):
        self._queue: Deque[int] = deque()
        self._members: Set[int] = set()

    def __len__(self) -> int:
        return len(self._queue)

    def __contains__(self, task_id: int) -> bool:
        return task_id in self._members

    def __iter__(self) -> Iterator[int]:
        return iter(list(self._queue))

    def push(self, task_id: int) -> None:
        """Append a task to the back of the queue"""
        if task_id in self._members:
            logger.debug(f"Task {task_id} already deferred")
            return
        self._queue.append(task_id)
        self._members.add(task_id)

    def push_front(self, task_id: int) -> None:
        """Move (or insert) a task to the head of the queue"""
        if task_id in self._members:
            self._queue.remove(task_id)
        self._queue.appendleft(task_id)
        self._members.add(task_id)

    def remove(self, task_id: int) -> bool:
        """
        Remove a task from anywhere in the queue.

        Returns:
            True if the task was queued
        """
        if task_id not in self._members:
            return False
        self._queue.remove(task_id)
        self._members.discard(task_id)
        return True

    def drain(self,
              retry: Callable[[int], bool],
              predicate: Optional[Callable[[int], bool]] = None) -> List[int]:
        """
        Re-attempt every queued task in FIFO order.

        The whole queue is scanned, not just its head, so an incompatible task
        at the front never blocks compatible ones behind it. Tasks rejected by
        `predicate` are skipped without a retry; tasks whose retry fails stay
        queued in their original relative order.

        Args:
            retry: Called with a task id, returns True if the task was placed.
                   It must not push the task back itself.
            predicate: Optional filter selecting which tasks to retry

        Returns:
            Task ids that left the queue

        Raises:
            Whatever `retry` raises. The failing task and every task not yet
            retried are queued again first.
        """
        snapshot = list(self._queue)
        self._queue.clear()
        self._members.clear()

        placed = []
        for index, task_id in enumerate(snapshot):
            if predicate is not None and not predicate(task_id):
                self.push(task_id)
                continue
            try:
                succeeded = retry(task_id)
            except Exception:
                for remaining in snapshot[index:]:
                    self.push(remaining)
                raise
            if succeeded:
                placed.append(task_id)
            else:
                self.push(task_id)

        if placed:
            logger.info(f"Placed {len(placed)} deferred tasks, {len(self._queue)} still waiting")
        return placed
