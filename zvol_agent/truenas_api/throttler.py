"""
Appliance Request Throttling
============================

Keeps a storage's calls inside the appliance's API budget through:
- A token bucket shared by every call of one client
- Exponential backoff with jitter on retryable errors
"""

import logging
import random
import threading
import time
from typing import Callable, Optional

from .errors import ApplianceError, TransportError, is_retryable

logger = logging.getLogger(__name__)


class RateLimiter:
    """
    Thread-safe token bucket: ``calls`` tokens refilled evenly over ``window``
    seconds. ``calls=0`` disables limiting.
    """

    def __init__(
        self,
        calls: int = 20,
        window: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.calls = calls
        self.window = window
        self._clock = clock
        self._sleep = sleep
        self._tokens = float(calls)
        self._updated = clock()
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return self.calls > 0

    def _refill(self, now: float):
        rate = self.calls / self.window
        self._tokens = min(float(self.calls), self._tokens + (now - self._updated) * rate)
        self._updated = now

    def try_acquire(self) -> bool:
        """Take a token without waiting."""
        if not self.enabled:
            return True
        with self._lock:
            self._refill(self._clock())
            if self._tokens >= 1:
                self._tokens -= 1
                return True
            return False

    def acquire(self, deadline: Optional[float] = None) -> float:
        """
        Block until a token is available.

        Returns the number of seconds spent waiting.
        Raises TransportError if the wait would cross ``deadline``.
        """
        if not self.enabled:
            return 0.0

        waited = 0.0
        while True:
            with self._lock:
                now = self._clock()
                self._refill(now)
                if self._tokens >= 1:
                    self._tokens -= 1
                    return waited
                wait = (1 - self._tokens) * self.window / self.calls

            if deadline is not None and now + wait > deadline:
                raise TransportError(
                    f"Rate limiter wait of {wait:.1f}s exceeds the call deadline",
                    error_code="RATE_LIMIT_DEADLINE",
                )
            logger.debug(f"Throttle: delaying {int(wait * 1000)}ms for rate limit")
            self._sleep(wait)
            waited += wait


class RetryPolicy:
    """
    Exponential backoff with jitter, applied uniformly to retryable errors.

    delay(attempt) = min(base_delay * 2**attempt + jitter, max_delay)
    where jitter is uniform in [0, jitter_ratio * base_delay * 2**attempt].
    """

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        jitter_ratio: float = 0.2,
        rand: Callable[[float, float], float] = random.uniform,
    ):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter_ratio = jitter_ratio
        self._rand = rand

    def delay(self, attempt: int) -> float:
        """Backoff before retry number ``attempt + 1`` (attempt is 0-based)."""
        base = self.base_delay * (2 ** attempt)
        jitter = self._rand(0, self.jitter_ratio * base)
        return min(base + jitter, self.max_delay)

    def should_retry(self, error: ApplianceError, attempt: int) -> bool:
        return is_retryable(error) and attempt < self.max_retries
