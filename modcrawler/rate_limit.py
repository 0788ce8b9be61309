"""
Shared GitHub quota tracking
One RateLimiter is owned by a GitHubClient and shared by every worker thread.
"""

import logging
import threading
import time
from typing import Callable, Optional

from .config import RATE_LIMIT_THRESHOLD

logger = logging.getLogger(__name__)


class RateLimiter:
    """Remaining-request counter plus reset timestamp, guarded by a single lock"""

    def __init__(
        self,
        threshold: int = RATE_LIMIT_THRESHOLD,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.threshold = max(0, threshold)
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._remaining: Optional[int] = None
        self._reset_at: Optional[float] = None

    @property
    def remaining(self) -> Optional[int]:
        return self._remaining

    @property
    def reset_at(self) -> Optional[float]:
        return self._reset_at

    def acquire(self):
        """
        Reserve one request. Blocks until the reset time when the tracked
        quota is at or below the threshold. The lock is held while sleeping,
        every other worker queues behind the same reset.
        """
        with self._lock:
            if self._remaining is not None and self._remaining <= self.threshold:
                wait = (self._reset_at or 0) - self._clock()
                if wait > 0:
                    logger.warning(
                        f"Quota low ({self._remaining} left), waiting {wait:.0f}s for reset"
                    )
                    self._sleep(wait)
                # New window: quota unknown until the next response reports it
                self._remaining = None
                self._reset_at = None

            if self._remaining is not None:
                self._remaining -= 1

    def update(self, headers):
        """Record X-RateLimit-Remaining / X-RateLimit-Reset from a response"""
        remaining = _header_int(headers, 'X-RateLimit-Remaining')
        reset = _header_int(headers, 'X-RateLimit-Reset')
        if remaining is None:
            return

        with self._lock:
            if reset is not None and self._reset_at is not None and reset == self._reset_at:
                # Same window: responses can arrive out of order, keep the lowest count
                if self._remaining is None or remaining < self._remaining:
                    self._remaining = remaining
            elif reset is None or self._reset_at is None or reset > self._reset_at:
                self._remaining = remaining
                self._reset_at = float(reset) if reset is not None else self._reset_at

    def exhaust(self, reset_at: Optional[float] = None):
        """Mark the quota as spent until reset_at"""
        with self._lock:
            self._remaining = 0
            if reset_at is not None:
                self._reset_at = float(reset_at)

    def pause(self, seconds: float):
        """Sleep for an explicit Retry-After, holding every other worker back too"""
        with self._lock:
            logger.warning(f"Rate limited, retrying after {seconds:.0f}s")
            self._sleep(seconds)


def _header_int(headers, name: str) -> Optional[int]:
    value = headers.get(name) if headers else None
    if value is None:
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None
