"""
Unit tests for the retry scheduler.
"""

from unittest.mock import MagicMock

import pytest

from balancer.errors import ConfigError, QueryError, StaleDataError
from balancer.retry import RetryScheduler


class TestRetryScheduler:
    """Test backoff growth, capping and reset."""

    def setup_method(self):
        self.sleeps = []
        self.retry = RetryScheduler(
            base_seconds=1, multiplier=2, cap_seconds=5, max_attempts=5, sleep=self.sleeps.append
        )

    def test_delays_double_then_cap(self):
        """Consecutive failures wait 1, 2, 4 then the cap."""
        delays = [self.retry.record_failure() for _ in range(5)]
        assert delays == [1, 2, 4, 5, 5]
        assert self.retry.consecutive_failures == 5

    def test_success_resets(self):
        """A success returns the delay to base."""
        self.retry.record_failure()
        self.retry.record_failure()
        self.retry.record_success()
        assert self.retry.current_delay == 1
        assert self.retry.consecutive_failures == 0

    def test_call_retries_transient_errors(self):
        """Transient failures are retried with growing sleeps."""
        func = MagicMock(side_effect=[QueryError("down"), StaleDataError("stale"), "ok"])
        assert self.retry.call(func, "a", key="b") == "ok"
        assert func.call_count == 3
        func.assert_called_with("a", key="b")
        assert self.sleeps == [1, 2]
        # the caller decides whether to reset
        assert self.retry.current_delay == 4

    def test_call_gives_up_after_max_attempts(self):
        """The last error is re-raised once attempts are exhausted."""
        func = MagicMock(side_effect=QueryError("down"))
        with pytest.raises(QueryError):
            self.retry.call(func)
        assert func.call_count == 5
        assert self.sleeps == [1, 2, 4, 5]

    def test_config_errors_are_not_retried(self):
        """Configuration errors propagate immediately."""
        func = MagicMock(side_effect=ConfigError("bad divisor"))
        with pytest.raises(ConfigError):
            self.retry.call(func)
        assert func.call_count == 1
        assert self.sleeps == []

    def test_from_settings(self):
        settings = MagicMock(retry_base_seconds=2.0, retry_multiplier=3.0,
                             retry_cap_seconds=60.0, retry_max_attempts=2)
        retry = RetryScheduler.from_settings(settings, sleep=self.sleeps.append)
        assert retry.record_failure() == 2.0
        assert retry.record_failure() == 6.0
        assert retry.max_attempts == 2
