import threading
import time
from collections import deque
from collections.abc import Hashable
from typing import Generic, TypeVar

KeyT = TypeVar("KeyT", bound=Hashable)

DEFAULT_BASE_DELAY = 1.0
DEFAULT_MAX_DELAY = 300.0


class WorkQueue(Generic[KeyT]):
    """
    A deduplicating queue of keys to reconcile, shared by watch threads
    (producers) and worker threads (consumers).

    * a key is queued at most once, no matter how often it is added
    * a key is handed to at most one worker at a time; if it is added while
      being processed, it is queued again once the worker calls `done`
    * `add_after` schedules a key with a delay, `backoff` computes an
      exponential delay per key that `forget` resets
    """

    def __init__(
        self,
        base_delay: float = DEFAULT_BASE_DELAY,
        max_delay: float = DEFAULT_MAX_DELAY,
    ) -> None:
        self._cond = threading.Condition()
        self._queue: deque[KeyT] = deque()
        self._queued: set[KeyT] = set()
        self._processing: set[KeyT] = set()
        self._dirty: set[KeyT] = set()
        self._delayed: dict[KeyT, float] = {}
        self._failures: dict[KeyT, int] = {}
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._shutdown = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    def add(self, key: KeyT) -> None:
        with self._cond:
            if self._shutdown:
                return
            self._delayed.pop(key, None)
            if key in self._processing:
                self._dirty.add(key)
                return
            if key in self._queued:
                return
            self._queued.add(key)
            self._queue.append(key)
            self._cond.notify()

    def add_after(self, key: KeyT, delay: float) -> None:
        if delay <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutdown:
                return
            ready_at = time.monotonic() + delay
            # an earlier schedule wins
            if key in self._delayed and self._delayed[key] <= ready_at:
                return
            self._delayed[key] = ready_at
            self._cond.notify()

    def _promote_delayed(self) -> float | None:
        """
        Moves due delayed keys into the queue, returns the seconds until the
        next delayed key is due. Must be called with the lock held.
        """
        now = time.monotonic()
        next_due = None
        for key, ready_at in list(self._delayed.items()):
            if ready_at <= now:
                del self._delayed[key]
                if key in self._processing:
                    self._dirty.add(key)
                elif key not in self._queued:
                    self._queued.add(key)
                    self._queue.append(key)
            elif next_due is None or ready_at - now < next_due:
                next_due = ready_at - now
        return next_due

    def get(self, timeout: float | None = None) -> KeyT | None:
        """
        Blocks until a key is available and marks it as being processed.
        Returns None on shutdown or when `timeout` passed without a key.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                if self._shutdown:
                    return None
                next_due = self._promote_delayed()
                if self._queue:
                    key = self._queue.popleft()
                    self._queued.discard(key)
                    self._processing.add(key)
                    return key
                wait = next_due
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return None
                    wait = remaining if wait is None else min(wait, remaining)
                self._cond.wait(wait)

    def done(self, key: KeyT) -> None:
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._dirty.discard(key)
                if not self._shutdown and key not in self._queued:
                    self._queued.add(key)
                    self._queue.append(key)
                    self._cond.notify()

    def backoff(self, key: KeyT) -> float:
        with self._cond:
            failures = self._failures.get(key, 0)
            self._failures[key] = failures + 1
        return min(self._base_delay * 2**failures, self._max_delay)

    def forget(self, key: KeyT) -> None:
        with self._cond:
            self._failures.pop(key, None)

    def shutdown(self) -> None:
        with self._cond:
            self._shutdown = True
            self._cond.notify_all()
