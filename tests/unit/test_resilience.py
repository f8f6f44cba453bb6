"""Tests for retry helpers.

Tests the retry decorator, RetryConfig and retry_operation.
"""

import pytest

from historian.lib.errors import ExtractionError, StaleWatermarkError
from historian.lib.resilience import RetryConfig, retry_operation, with_retry


class TestWithRetryDecorator:
    """Tests for the @with_retry decorator."""

    def test_success_on_first_attempt(self):
        """Should return result immediately on success."""
        call_count = 0

        @with_retry(max_attempts=3)
        def successful_function():
            nonlocal call_count
            call_count += 1
            return "success"

        assert successful_function() == "success"
        assert call_count == 1

    def test_retry_on_extraction_error(self):
        """Should retry transient extraction failures."""
        call_count = 0

        @with_retry(max_attempts=3, backoff_seconds=0.01, jitter=False)
        def flaky():
            nonlocal call_count
            call_count += 1
            if call_count < 3:
                raise ExtractionError("source busy")
            return "success"

        assert flaky() == "success"
        assert call_count == 3

    def test_gives_up_after_max_attempts(self):
        """The last error is re-raised."""
        call_count = 0

        @with_retry(max_attempts=2, backoff_seconds=0.01, jitter=False)
        def always_failing():
            nonlocal call_count
            call_count += 1
            raise ExtractionError("down")

        with pytest.raises(ExtractionError):
            always_failing()
        assert call_count == 2

    def test_non_retryable_not_retried(self):
        """Errors outside the retryable set fail immediately."""
        call_count = 0

        @with_retry(max_attempts=3, backoff_seconds=0.01)
        def buggy():
            nonlocal call_count
            call_count += 1
            raise KeyError("bug")

        with pytest.raises(KeyError):
            buggy()
        assert call_count == 1

    def test_preserves_function_name(self):
        """The decorated function keeps its name."""

        @with_retry()
        def named_function():
            return 1

        assert named_function.__name__ == "named_function"


class TestRetryOperation:
    """Tests for retry_operation."""

    def test_retries_then_succeeds(self):
        """Transient failures are retried."""
        attempts = []

        def operation():
            attempts.append(1)
            if len(attempts) == 1:
                raise OSError("connection reset")
            return 42

        config = RetryConfig(max_attempts=3, backoff_seconds=0, jitter=False)

        assert retry_operation(operation, config, "extract") == 42
        assert len(attempts) == 2

    def test_stale_watermark_never_retried(self):
        """A commit race is never retried, even if listed as retryable."""
        attempts = []

        def operation():
            attempts.append(1)
            raise StaleWatermarkError("moved", expected=1, current=2)

        config = RetryConfig(
            max_attempts=5,
            backoff_seconds=0,
            jitter=False,
            retry_exceptions=(Exception,),
        )

        with pytest.raises(StaleWatermarkError):
            retry_operation(operation, config, "commit")
        assert len(attempts) == 1

    def test_none_config(self):
        """RetryConfig.none() makes a single attempt."""
        attempts = []

        def operation():
            attempts.append(1)
            raise ExtractionError("down")

        with pytest.raises(ExtractionError):
            retry_operation(operation, RetryConfig.none())
        assert len(attempts) == 1


class TestRetryConfig:
    """Tests for RetryConfig."""

    def test_defaults(self):
        """Default config uses exponential backoff with jitter."""
        config = RetryConfig.default()

        assert config.max_attempts == 3
        assert config.exponential
        assert config.jitter
