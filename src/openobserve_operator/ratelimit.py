"""Token bucket rate limiter shared by every worker talking to one backend."""
from __future__ import annotations

import logging
import time
from threading import Lock
from typing import Callable, Optional

from .errors import RemoteTransientError

_LOG = logging.getLogger(__name__)


class TokenBucket:
    """Thread-safe token bucket.

    Holds at most ``burst`` tokens and refills at ``rate`` tokens per second.
    Callers block in :meth:`acquire` until a token is available; the lock is
    never held while sleeping.
    """

    def __init__(
        self,
        rate: float,
        burst: int,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if rate <= 0 or burst < 1:
            raise ValueError("rate must be positive and burst at least 1")
        self.rate = rate
        self.burst = burst
        self._clock = clock
        self._sleep = sleep
        self._tokens = float(burst)
        self._updated = clock()
        self._lock = Lock()

    def _refill(self, now: float) -> None:
        elapsed = max(0.0, now - self._updated)
        self._tokens = min(float(self.burst), self._tokens + elapsed * self.rate)
        self._updated = now

    def try_acquire(self) -> float:
        """Take a token if possible; otherwise return the seconds to wait."""

        with self._lock:
            self._refill(self._clock())
            if self._tokens >= 1:
                self._tokens -= 1
                return 0.0
            return (1 - self._tokens) / self.rate

    def acquire(self, timeout: Optional[float] = None) -> None:
        deadline = None if timeout is None else self._clock() + timeout
        while True:
            wait = self.try_acquire()
            if wait <= 0:
                return
            if deadline is not None and self._clock() + wait > deadline:
                raise RemoteTransientError("Rate limiter wait exceeded the request timeout", reason="RateLimited")
            _LOG.debug("Rate limited; waiting %.3fs", wait)
            self._sleep(wait)

    @property
    def available(self) -> float:
        with self._lock:
            self._refill(self._clock())
            return self._tokens
