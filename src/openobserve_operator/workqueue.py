"""Work queue with per-key serialization and exponential backoff."""
from __future__ import annotations

import heapq
import itertools
import random
import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, Generic, Hashable, List, Optional, Set, Tuple, TypeVar

K = TypeVar("K", bound=Hashable)


class Backoff(Generic[K]):
    """Exponential backoff with full jitter, tracked per key."""

    def __init__(
        self,
        base: float = 1.0,
        cap: float = 300.0,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.base = base
        self.cap = cap
        self._rng = rng
        self._failures: Dict[K, int] = {}
        self._lock = threading.Lock()

    def ceiling(self, failures: int) -> float:
        return min(self.cap, self.base * (2 ** failures))

    def next_delay(self, key: K) -> float:
        with self._lock:
            failures = self._failures.get(key, 0)
            self._failures[key] = failures + 1
        return self._rng() * self.ceiling(failures)

    def failures(self, key: K) -> int:
        with self._lock:
            return self._failures.get(key, 0)

    def forget(self, key: K) -> None:
        with self._lock:
            self._failures.pop(key, None)


class WorkQueue(Generic[K]):
    """FIFO of keys where a key is never handed to two workers at once.

    A key added while it is being processed is marked dirty and queued again
    when :meth:`done` is called, so the latest state is always reconciled
    once more after an in-flight pass finishes.
    """

    def __init__(
        self,
        name: str,
        backoff: Optional[Backoff[K]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.backoff: Backoff[K] = backoff or Backoff()
        self._clock = clock
        self._queue: Deque[K] = deque()
        self._dirty: Set[K] = set()
        self._processing: Set[K] = set()
        self._delayed: List[Tuple[float, int, K]] = []
        self._counter = itertools.count()
        self._cond = threading.Condition()
        self._shutting_down = False

    def add(self, key: K) -> None:
        with self._cond:
            self._add_locked(key)

    def _add_locked(self, key: K) -> None:
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        self._cond.notify()

    def add_after(self, key: K, delay: float) -> None:
        if delay <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutting_down:
                return
            heapq.heappush(self._delayed, (self._clock() + delay, next(self._counter), key))
            self._cond.notify()

    def add_rate_limited(self, key: K) -> float:
        delay = self.backoff.next_delay(key)
        self.add_after(key, delay)
        return delay

    def forget(self, key: K) -> None:
        self.backoff.forget(key)

    def _promote_due(self) -> Optional[float]:
        """Move due delayed keys to the queue; return seconds until the next one."""

        now = self._clock()
        while self._delayed and self._delayed[0][0] <= now:
            _, _, key = heapq.heappop(self._delayed)
            self._add_locked(key)
        if self._delayed:
            return self._delayed[0][0] - now
        return None

    def get(self, timeout: Optional[float] = None) -> Optional[K]:
        """Block until a key is ready; ``None`` on shutdown or timeout."""

        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while True:
                next_due = self._promote_due()
                if self._queue:
                    key = self._queue.popleft()
                    self._processing.add(key)
                    self._dirty.discard(key)
                    return key
                if self._shutting_down:
                    return None
                wait = next_due
                if deadline is not None:
                    remaining = deadline - self._clock()
                    if remaining <= 0:
                        return None
                    wait = remaining if wait is None else min(wait, remaining)
                self._cond.wait(wait)

    def done(self, key: K) -> None:
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._queue.append(key)
                self._cond.notify()

    def shutdown(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()

    def pending(self) -> int:
        with self._cond:
            return len(self._queue)

    def delayed(self) -> int:
        with self._cond:
            return len(self._delayed)

    def in_flight(self, key: K) -> bool:
        with self._cond:
            return key in self._processing
