"""Token bucket rate limiting for remote API calls."""

import logging
import threading
import time
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class TokenBucket:
    """Thread-safe token bucket.

    Tokens are replenished continuously at ``rate`` tokens per second up to
    ``capacity``. :meth:`acquire` blocks the calling thread until a token is
    available instead of failing.

    Examples:
        >>> bucket = TokenBucket(rate=10, capacity=10)
        >>> bucket.acquire()
        0.0
    """

    def __init__(
        self,
        rate: float,
        capacity: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize the bucket.

        Args:
            rate: Tokens added per second (must be positive)
            capacity: Maximum number of stored tokens (defaults to ``rate``,
                at least 1)
            clock: Monotonic clock returning seconds
            sleep: Function used to wait for tokens
        """
        if rate <= 0:
            raise ValueError("rate must be positive")
        self.rate = float(rate)
        self.capacity = float(capacity if capacity is not None else max(rate, 1.0))
        if self.capacity < 1:
            raise ValueError("capacity must be at least 1")
        self._clock = clock
        self._sleep = sleep
        self._tokens = self.capacity
        self._last = clock()
        self._lock = threading.Lock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._last)
        self._last = now
        self._tokens = min(self.capacity, self._tokens + elapsed * self.rate)

    def acquire(self) -> float:
        """Take a token, waiting until one is available.

        Returns:
            Total time spent waiting in seconds
        """
        waited = 0.0
        while True:
            with self._lock:
                self._refill()
                if self._tokens >= 1:
                    self._tokens -= 1
                    if waited:
                        logger.debug(f"Rate limit permit granted after {waited:.2f}s")
                    return waited
                wait = (1 - self._tokens) / self.rate
            self._sleep(wait)
            waited += wait


class NullRateLimiter:
    """Rate limiter that admits every request immediately."""

    def acquire(self) -> float:
        return 0.0
