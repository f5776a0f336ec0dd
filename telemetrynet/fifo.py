"""Thread-safe counting semaphore and bounded first-in first-out queue."""

from __future__ import annotations

import threading
from collections import deque
from typing import Generic, Iterator, TypeVar

T = TypeVar("T")


class CountingSemaphore:
    """A counting semaphore whose current value can be inspected."""

    def __init__(self, count: int = 0) -> None:
        if count < 0:
            raise ValueError("semaphore count must not be negative")
        self._count = count
        self._cond = threading.Condition()

    def acquire(self) -> bool:
        """Block until the count is positive, then decrement it."""
        with self._cond:
            self._cond.wait_for(lambda: self._count > 0)
            self._count -= 1
            return True

    def release(self) -> None:
        with self._cond:
            self._count += 1
            self._cond.notify()

    def value(self) -> int:
        with self._cond:
            return self._count


class FifoClosed(Exception):
    """Raised when reading a closed, drained queue or writing a closed one."""


class BoundedFifo(Generic[T]):
    """A blocking queue holding at most ``capacity`` items.

    Writers block while the queue is full, readers while it is empty.
    After :meth:`close`, remaining items can still be read; then reads
    raise :class:`FifoClosed`.
    """

    def __init__(self, capacity: int) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._items: deque[T] = deque()
        self._cond = threading.Condition()
        self._closed = False

    def write(self, item: T) -> None:
        with self._cond:
            self._cond.wait_for(
                lambda: self._closed or len(self._items) < self.capacity
            )
            if self._closed:
                raise FifoClosed("write to a closed queue")
            self._items.append(item)
            self._cond.notify_all()

    def read(self) -> T:
        with self._cond:
            self._cond.wait_for(lambda: self._closed or self._items)
            if not self._items:
                raise FifoClosed("queue closed")
            item = self._items.popleft()
            self._cond.notify_all()
            return item

    def ready(self) -> int:
        """Number of items waiting to be read."""
        with self._cond:
            return len(self._items)

    def full(self) -> bool:
        with self._cond:
            return len(self._items) == self.capacity

    def close(self) -> None:
        """Wake all waiters; further writes fail and reads drain what is left."""
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    def __len__(self) -> int:
        return self.ready()

    def __iter__(self) -> Iterator[T]:
        """Yield items as they are read until the queue is closed and drained."""
        while True:
            try:
                yield self.read()
            except FifoClosed:
                return