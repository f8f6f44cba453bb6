"""Retry helpers for transient extraction failures.

Retry is applied by the batch pipeline around extraction only. A watermark
commit is never retried: a ``StaleWatermarkError`` means the batch must be
discarded and re-extracted from the new watermark.

Implementation: Uses tenacity library internally.
"""

from __future__ import annotations

import logging
from functools import wraps
from typing import Any, Callable, Optional, Tuple, Type, TypeVar

import tenacity
from tenacity.wait import wait_base

from historian.lib.errors import (
    ExtractionError,
    LockTimeoutError,
    StaleWatermarkError,
    StorageError,
)

logger = logging.getLogger(__name__)

__all__ = ["NEVER_RETRY", "RETRYABLE_ERRORS", "RetryConfig", "retry_operation", "with_retry"]

F = TypeVar("F", bound=Callable[..., Any])

RETRYABLE_ERRORS: Tuple[Type[BaseException], ...] = (
    ExtractionError,
    StorageError,
    LockTimeoutError,
    OSError,
)

# Wins over retry_exceptions
NEVER_RETRY: Tuple[Type[BaseException], ...] = (StaleWatermarkError,)


class RetryConfig:
    """How often and how patiently to retry an operation."""

    def __init__(
        self,
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
        exponential: bool = True,
        jitter: bool = True,
        retry_exceptions: Tuple[Type[BaseException], ...] = RETRYABLE_ERRORS,
    ):
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.exponential = exponential
        self.jitter = jitter
        self.retry_exceptions = retry_exceptions

    def __repr__(self) -> str:
        return (
            f"RetryConfig(max_attempts={self.max_attempts}, "
            f"backoff_seconds={self.backoff_seconds}, exponential={self.exponential})"
        )

    @classmethod
    def none(cls) -> "RetryConfig":
        """Single attempt."""
        return cls(max_attempts=1)

    @classmethod
    def default(cls) -> "RetryConfig":
        return cls()

    def wait_strategy(self) -> wait_base:
        """Backoff between attempts: ``backoff * 2^(n-1)`` or fixed, plus jitter."""
        wait: wait_base
        if self.exponential:
            wait = tenacity.wait_exponential(multiplier=self.backoff_seconds, min=self.backoff_seconds)
        else:
            wait = tenacity.wait_fixed(self.backoff_seconds)
        if self.jitter:
            wait = wait + tenacity.wait_random(0, self.backoff_seconds * 0.5)
        return wait

    def retry_condition(self) -> tenacity.retry_base:
        return tenacity.retry_if_exception_type(self.retry_exceptions) & tenacity.retry_if_not_exception_type(
            NEVER_RETRY
        )

    def retrying(self, operation_name: str, log: logging.Logger = logger) -> tenacity.Retrying:
        """A tenacity ``Retrying`` that logs each failed attempt and re-raises the last error."""

        def before_sleep(retry_state: tenacity.RetryCallState) -> None:
            error = retry_state.outcome.exception() if retry_state.outcome else None
            log.warning(
                "%s attempt %d/%d failed: %s. Retrying in %.1fs...",
                operation_name,
                retry_state.attempt_number,
                self.max_attempts,
                error,
                retry_state.next_action.sleep if retry_state.next_action else 0,
            )

        return tenacity.Retrying(
            stop=tenacity.stop_after_attempt(self.max_attempts),
            wait=self.wait_strategy(),
            retry=self.retry_condition(),
            before_sleep=before_sleep,
            reraise=True,
        )


def retry_operation(
    operation: Callable[[], Any],
    config: RetryConfig,
    operation_name: str = "operation",
) -> Any:
    """Execute an operation with retry logic.

    Example:
        result = retry_operation(
            lambda: extractor.extract("erp", "products", since),
            RetryConfig.default(),
            "extract erp.products",
        )
    """
    try:
        return config.retrying(operation_name)(operation)
    except Exception:
        logger.error("%s failed (max %d attempts)", operation_name, config.max_attempts)
        raise


def with_retry(
    max_attempts: int = 3,
    backoff_seconds: float = 1.0,
    exponential: bool = True,
    jitter: bool = True,
    retry_exceptions: Optional[Tuple[Type[BaseException], ...]] = None,
) -> Callable[[F], F]:
    """Opt-in retry decorator for custom extractors.

    Example:
        class ApiExtractor(ChangeExtractor):
            @with_retry(max_attempts=5)
            def extract(self, source_system, entity, since):
                ...
    """
    config = RetryConfig(
        max_attempts=max_attempts,
        backoff_seconds=backoff_seconds,
        exponential=exponential,
        jitter=jitter,
        retry_exceptions=retry_exceptions or RETRYABLE_ERRORS,
    )

    def decorator(fn: F) -> F:
        fn_logger = logging.getLogger(fn.__module__)

        @wraps(fn)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            return config.retrying(fn.__qualname__, fn_logger)(fn, *args, **kwargs)

        return wrapper  # type: ignore

    return decorator
