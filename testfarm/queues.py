"""
Thread-safe primitives shared between the orchestrator and the workers.

- WorkQueue: bounded job queue that the producer closes after filling it;
  consumers stop once it is closed and empty
- ResultCollector: many writers, one reader
- CompletionBarrier: counts workers that have not finished yet
"""

import logging
import queue
import threading
from collections import deque
from typing import Any, Iterator, Optional

logger = logging.getLogger(__name__)


class QueueClosed(Exception):
    """Raised when putting to a closed queue, or getting from a drained one."""

    pass


class QueueFull(Exception):
    """Raised when putting more items than the queue's capacity."""

    pass


class WorkQueue:
    """Bounded FIFO of job identifiers, drained by many consumers."""

    def __init__(self, capacity: int):
        if capacity < 0:
            raise ValueError(f"Capacity must not be negative: {capacity}")
        self.capacity = capacity
        self._items = deque()
        self._closed = False
        self._cond = threading.Condition()

    def put(self, item: str):
        with self._cond:
            if self._closed:
                raise QueueClosed("Cannot put to a closed work queue")
            if len(self._items) >= self.capacity:
                raise QueueFull(f"Work queue is full ({self.capacity} items)")
            self._items.append(item)
            self._cond.notify()

    def close(self):
        """Mark the queue as complete; waiting consumers wake up."""
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    def get(self, timeout: Optional[float] = None) -> str:
        """
        Remove and return the next job, blocking while the queue is open
        and empty.

        Raises:
            QueueClosed: If the queue is closed and empty
            queue.Empty: If ``timeout`` expires first
        """
        with self._cond:
            if not self._cond.wait_for(
                lambda: self._items or self._closed, timeout=timeout
            ):
                raise queue.Empty
            if self._items:
                return self._items.popleft()
            raise QueueClosed("Work queue is closed and empty")

    def __iter__(self) -> Iterator[str]:
        while True:
            try:
                yield self.get()
            except QueueClosed:
                return

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        with self._cond:
            return len(self._items)


class ResultCollector:
    """Channel of results written by every worker and read by one reader."""

    def __init__(self, capacity: int):
        self.capacity = capacity
        self._queue = queue.Queue(maxsize=capacity)

    def put(self, result: Any):
        # Capacity equals the job count, so this never blocks
        self._queue.put(result)

    def get(self, timeout: Optional[float] = None) -> Any:
        """Return the next result; raises ``queue.Empty`` on timeout."""
        return self._queue.get(timeout=timeout)

    def empty(self) -> bool:
        return self._queue.empty()

    def __len__(self) -> int:
        return self._queue.qsize()


class CompletionBarrier:
    """Counter of outstanding workers that can be waited on until zero."""

    def __init__(self):
        self._count = 0
        self._cond = threading.Condition()

    def add(self, n: int = 1):
        with self._cond:
            self._count += n

    def done(self):
        with self._cond:
            if self._count <= 0:
                raise RuntimeError("CompletionBarrier.done() called too many times")
            self._count -= 1
            if self._count == 0:
                self._cond.notify_all()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the count is zero; False if ``timeout`` expired."""
        with self._cond:
            return self._cond.wait_for(lambda: self._count == 0, timeout=timeout)

    @property
    def count(self) -> int:
        with self._cond:
            return self._count

    def is_done(self) -> bool:
        return self.count == 0
