"""
Process-wide exponential backoff for calls into external capabilities.
"""

import logging
import threading
import time
from typing import Callable, Tuple, Type

from . import config
from .errors import QueryError, StaleDataError

logger = logging.getLogger(__name__)


class RetryScheduler:
    """
    Exponential backoff shared by every cycle in the process.

    The delay after a failure is ``min(base * multiplier, cap)``; the
    multiplier starts at 1, doubles per consecutive failure and resets to 1
    on success.

    Args:
        base_seconds: Delay after the first failure
        multiplier: Growth factor per consecutive failure
        cap_seconds: Upper bound on any single delay
        max_attempts: Attempts per ``call`` before the error is re-raised
        retry_on: Exception types considered transient
        sleep: Sleep function (injectable for tests)
    """

    def __init__(self,
                 base_seconds: float = config.RETRY_BASE_SECONDS,
                 multiplier: float = config.RETRY_MULTIPLIER,
                 cap_seconds: float = config.RETRY_CAP_SECONDS,
                 max_attempts: int = config.RETRY_MAX_ATTEMPTS,
                 retry_on: Tuple[Type[BaseException], ...] = (QueryError, StaleDataError),
                 sleep: Callable[[float], None] = time.sleep):
        self.base_seconds = base_seconds
        self.growth = multiplier
        self.cap_seconds = cap_seconds
        self.max_attempts = max_attempts
        self.retry_on = retry_on
        self.sleep = sleep

        self._lock = threading.Lock()
        self._multiplier = 1.0
        self.consecutive_failures = 0

    @classmethod
    def from_settings(cls, settings, **kwargs) -> "RetryScheduler":
        return cls(
            base_seconds=settings.retry_base_seconds,
            multiplier=settings.retry_multiplier,
            cap_seconds=settings.retry_cap_seconds,
            max_attempts=settings.retry_max_attempts,
            **kwargs,
        )

    @property
    def current_delay(self) -> float:
        """Delay that the next failure would impose."""
        with self._lock:
            return min(self.base_seconds * self._multiplier, self.cap_seconds)

    def record_failure(self) -> float:
        """Register a failure and return the delay to wait before the next attempt."""
        with self._lock:
            delay = min(self.base_seconds * self._multiplier, self.cap_seconds)
            self._multiplier *= self.growth
            self.consecutive_failures += 1
            return delay

    def record_success(self):
        with self._lock:
            self._multiplier = 1.0
            self.consecutive_failures = 0

    def call(self, func: Callable, *args, **kwargs):
        """
        Call ``func``, retrying transient failures with backoff.

        Returning normally does not reset the backoff; the caller decides
        whether the result counts as a success and calls ``record_success``.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                result = func(*args, **kwargs)
            except self.retry_on as e:
                delay = self.record_failure()
                if attempt >= self.max_attempts:
                    logger.error(f"❌ Giving up after {attempt} attempts: {e}")
                    raise
                logger.warning(f"⚠️ Attempt {attempt} failed ({e}); retrying in {delay:.1f}s")
                self.sleep(delay)
                continue
            return result
