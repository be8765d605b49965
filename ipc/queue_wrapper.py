from __future__ import annotations

"""Bounded in-process queue that never blocks the producer.

Audio capture runs on the PortAudio callback thread and must never wait on a
slow consumer.  :class:`DropOldestQueue` therefore evicts the *oldest* queued
item when full and reports the eviction to the caller.  Like the standard
queue wrappers elsewhere in the code base, ``get()`` normalises
:class:`queue.Empty` style waits to the built-in :class:`TimeoutError`.
"""

import threading
from collections import deque
from typing import Callable, Deque, Generic, List, Optional, TypeVar

_T = TypeVar("_T")

__all__ = ["DropOldestQueue"]


class DropOldestQueue(Generic[_T]):
    """Thread-safe FIFO with a hard *maxsize* and drop-oldest overflow."""

    def __init__(self, maxsize: int, *, on_drop: Optional[Callable[[_T, int], None]] = None):
        if maxsize <= 0:
            raise ValueError("maxsize must be positive")
        self._maxsize = maxsize
        self._items: Deque[_T] = deque()
        self._cond = threading.Condition()
        self._on_drop = on_drop
        self._closed = False
        self.dropped: int = 0

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------
    def put(self, item: _T) -> Optional[_T]:
        """Enqueue *item*; return the evicted item when the queue was full."""

        evicted: Optional[_T] = None
        with self._cond:
            if self._closed:
                raise ValueError("put() on closed queue")
            if len(self._items) >= self._maxsize:
                evicted = self._items.popleft()
                self.dropped += 1
            self._items.append(item)
            dropped_total = self.dropped
            self._cond.notify()

        # Diagnostic hook runs outside the lock so it may log freely.
        if evicted is not None and self._on_drop is not None:
            self._on_drop(evicted, dropped_total)
        return evicted

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------
    def get(self, timeout: float | None = None) -> _T:
        """Dequeue an item or raise :class:`TimeoutError`.

        A closed and drained queue raises :class:`EOFError` so consumer loops
        can tell "no data yet" apart from "no more data ever".
        """

        with self._cond:
            if not self._cond.wait_for(lambda: self._items or self._closed, timeout=timeout):
                raise TimeoutError("Timed out while waiting for item from DropOldestQueue")
            if self._items:
                return self._items.popleft()
            raise EOFError("DropOldestQueue closed")

    def drain(self) -> List[_T]:
        """Remove and return everything currently queued."""
        with self._cond:
            items = list(self._items)
            self._items.clear()
            return items

    def close(self) -> None:
        """Wake consumers; further ``put()`` calls fail."""
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    def reopen(self) -> None:
        with self._cond:
            self._closed = False
            self._items.clear()

    # ------------------------------------------------------------------
    # Convenience dunders
    # ------------------------------------------------------------------
    def __len__(self) -> int:
        with self._cond:
            return len(self._items)

    @property
    def maxsize(self) -> int:
        return self._maxsize

    @property
    def closed(self) -> bool:
        return self._closed
