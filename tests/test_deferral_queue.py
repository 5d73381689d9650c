import pytest
from greensched.scheduler.deferral_queue import DeferralQueue


@pytest.fixture
def queue():
    """Create a DeferralQueue holding tasks 1, 2, 3"""
    q = DeferralQueue()
    for task_id in (1, 2, 3):
        q.push(task_id)
    return q


def test_push_is_fifo_and_deduplicated(queue):
    """Test tasks keep arrival order and appear once"""
    queue.push(2)
    assert list(queue) == [1, 2, 3]
    assert len(queue) == 3
    assert 2 in queue
    assert 4 not in queue


def test_push_front_moves_existing_task(queue):
    """Test escalated tasks jump the queue"""
    queue.push_front(3)
    assert list(queue) == [3, 1, 2]

    queue.push_front(9)
    assert list(queue) == [9, 3, 1, 2]


def test_remove(queue):
    """Test removal from the middle of the queue"""
    assert queue.remove(2)
    assert not queue.remove(2)
    assert list(queue) == [1, 3]
    assert 2 not in queue


def test_drain_scans_whole_queue(queue):
    """Test a failing head does not block later tasks"""
    attempted = []

    def retry(task_id):
        attempted.append(task_id)
        return task_id != 1

    placed = queue.drain(retry)

    assert attempted == [1, 2, 3]
    assert placed == [2, 3]
    assert list(queue) == [1]


def test_drain_keeps_order_of_failures(queue):
    """Test tasks that fail again keep their relative order"""
    queue.push(4)
    placed = queue.drain(lambda task_id: task_id == 3)

    assert placed == [3]
    assert list(queue) == [1, 2, 4]


def test_drain_with_predicate(queue):
    """Test filtered tasks are kept without being retried"""
    attempted = []

    def retry(task_id):
        attempted.append(task_id)
        return True

    placed = queue.drain(retry, predicate=lambda task_id: task_id % 2 == 1)

    assert attempted == [1, 3]
    assert placed == [1, 3]
    assert list(queue) == [2]


def test_drain_empty_queue():
    """Test draining an empty queue is a no-op"""
    queue = DeferralQueue()
    assert queue.drain(lambda task_id: True) == []
    assert len(queue) == 0


def test_drain_keeps_tasks_when_retry_raises(queue):
    """Test a retry that raises leaves the failing and remaining tasks queued"""
    queue.push(4)

    def retry(task_id):
        if task_id == 2:
            raise RuntimeError("collaborator unavailable")
        return task_id == 1

    with pytest.raises(RuntimeError):
        queue.drain(retry)

    assert list(queue) == [2, 3, 4]
    assert 1 not in queue
    assert all(task_id in queue for task_id in (2, 3, 4))
