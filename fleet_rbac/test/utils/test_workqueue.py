import threading
import time

from fleet_rbac.utils.workqueue import WorkQueue


def test_workqueue_deduplicates() -> None:
    queue: WorkQueue[str] = WorkQueue()
    queue.add("a")
    queue.add("b")
    queue.add("a")

    assert len(queue) == 2
    assert queue.get(timeout=0) == "a"
    assert queue.get(timeout=0) == "b"
    assert queue.get(timeout=0) is None


def test_workqueue_key_processed_once_at_a_time() -> None:
    queue: WorkQueue[str] = WorkQueue()
    queue.add("a")
    assert queue.get(timeout=0) == "a"

    # added while being processed: held back until done
    queue.add("a")
    assert queue.get(timeout=0) is None

    queue.done("a")
    assert queue.get(timeout=0) == "a"
    queue.done("a")
    assert queue.get(timeout=0) is None


def test_workqueue_add_after() -> None:
    queue: WorkQueue[str] = WorkQueue()
    queue.add_after("a", 0.05)

    assert queue.get(timeout=0) is None
    assert queue.get(timeout=1) == "a"


def test_workqueue_add_overrides_delay() -> None:
    queue: WorkQueue[str] = WorkQueue()
    queue.add_after("a", 60)
    queue.add("a")

    assert queue.get(timeout=0) == "a"
    queue.done("a")
    assert queue.get(timeout=0.1) is None


def test_workqueue_backoff() -> None:
    queue: WorkQueue[str] = WorkQueue(base_delay=1, max_delay=5)

    assert [queue.backoff("a") for _ in range(5)] == [1, 2, 4, 5, 5]
    assert queue.backoff("b") == 1

    queue.forget("a")
    assert queue.backoff("a") == 1


def test_workqueue_shutdown_releases_consumers() -> None:
    queue: WorkQueue[str] = WorkQueue()
    results: list[str | None] = []
    consumer = threading.Thread(target=lambda: results.append(queue.get()))
    consumer.start()
    time.sleep(0.05)

    queue.shutdown()
    consumer.join(timeout=5)

    assert results == [None]
    queue.add("a")
    assert queue.get(timeout=0) is None
