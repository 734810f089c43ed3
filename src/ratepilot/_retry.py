"""
Retry loop with pluggable backoff.

Inspired by Tenacity's Retrying class, this module provides an iterator of
context managers that drive a bounded retry loop. The wait between attempts
is either exponential or supplied by the caller, which lets the adaptive rate
limiter plug in its own throttling-aware wait computation.

Example:
    >>> from ratepilot._retry import Retrying
    >>> for attempt in Retrying(max_retries=3, backoff_factor=0.5):
    ...     with attempt:
    ...         return fetch_something()
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Generator
from dataclasses import dataclass

logger = logging.getLogger(__name__)

# Type alias for custom wait strategies: (exception, attempt_number) -> seconds
WaitStrategy = Callable[[Exception, int], float]


class RetryableError(Exception):
    """
    Base class for exceptions that should trigger automatic retry.

    Exceptions extending this class are retried by `Retrying` without
    needing explicit configuration in `retry_on_exceptions`.

    Example:
        >>> class MyTransientError(RetryableError):
        ...     pass
        >>>
        >>> for attempt in Retrying(max_retries=3):
        ...     with attempt:
        ...         if some_condition:
        ...             raise MyTransientError("Temporary failure")
        ...         break
    """

    pass


class MaxRetriesExceededError(Exception):
    """
    Raised when all retry attempts are exhausted.

    Wraps the last exception that occurred so callers can inspect the
    original failure.

    Attributes:
        message: Human-readable error message.
        last_exception: The exception raised by the last attempt.
    """

    def __init__(self, message: str, last_exception: Exception | None = None):
        super().__init__(message)
        self.message = message
        self.last_exception = last_exception


@dataclass(frozen=True)
class RetryAttempt:
    """
    Metadata about the current attempt within a retry loop.

    Attributes:
        attempt_number: Zero-based index of the current attempt (0 = first attempt).
        max_retries: Maximum number of retries configured.

    Example:
        >>> for attempt_ctx in Retrying(max_retries=3):
        ...     with attempt_ctx as attempt:
        ...         print(f"Attempt {attempt.attempt_number + 1}/{attempt.max_attempts}")
    """

    attempt_number: int
    max_retries: int

    @property
    def max_attempts(self) -> int:
        """Total number of attempts (original + retries)."""
        return self.max_retries + 1

    @property
    def is_first_attempt(self) -> bool:
        """Return True if this is the original (non-retry) attempt."""
        return self.attempt_number == 0

    @property
    def is_last_attempt(self) -> bool:
        """Return True if this is the last attempt."""
        return self.attempt_number >= self.max_retries


class Retrying:
    """
    Bounded retry loop with exponential or custom backoff.

    Usage:
        >>> for attempt in Retrying(max_retries=3, backoff_factor=0.5):
        ...     with attempt:
        ...         response = client.send(request)
        ...         return response

    Args:
        max_retries: Maximum number of retries after the first attempt (default: 3).
            Use 0 for a single attempt.
        backoff_factor: Base delay for exponential backoff, in seconds (default: 0.5).
            Sleep time = backoff_factor * (2 ** attempt_number), capped at max_backoff.
        max_backoff: Upper bound for a single exponential backoff wait (default: 120s).
        retry_on_exceptions: Extra exception types that trigger retry (default: none).
        skip_retry_on_exceptions: Exception types that never trigger retry.
            Takes precedence over everything else.
        wait_strategy: Optional callable computing the wait from the failing
            exception and the zero-based attempt number. Replaces the
            exponential backoff when given.
        sleep: Callable used to wait between attempts (default: time.sleep).
            It may raise to abort the whole loop.
        logger_prefix: Prefix for log messages (e.g., "AdaptiveRateLimitedHttpClient").

    Raises:
        MaxRetriesExceededError: When the last attempt fails with a retryable error.

    Note:
        - Exceptions extending RetryableError are always retried (opt-in via inheritance)
        - Non-retryable exceptions propagate unchanged on the attempt they happen
        - The loop naturally exits on success (no exception raised)
    """

    def __init__(
        self,
        max_retries: int = 3,
        backoff_factor: float = 0.5,
        max_backoff: float = 120.0,
        retry_on_exceptions: tuple[type[Exception], ...] = (),
        skip_retry_on_exceptions: tuple[type[Exception], ...] = (),
        wait_strategy: WaitStrategy | None = None,
        sleep: Callable[[float], None] = time.sleep,
        logger_prefix: str = "",
    ):
        assert max_retries >= 0, f"max_retries must be >= 0, got {max_retries}"
        assert backoff_factor > 0, f"backoff_factor must be > 0, got {backoff_factor}"
        assert max_backoff > 0, f"max_backoff must be > 0, got {max_backoff}"
        assert retry_on_exceptions is not None, "retry_on_exceptions cannot be None"
        assert skip_retry_on_exceptions is not None, "skip_retry_on_exceptions cannot be None"
        assert sleep is not None, "sleep cannot be None"

        self.max_retries = max_retries
        self.backoff_factor = backoff_factor
        self.max_backoff = max_backoff
        self.retry_on_exceptions = retry_on_exceptions
        self.skip_retry_on_exceptions = skip_retry_on_exceptions
        self.wait_strategy = wait_strategy
        self.sleep = sleep
        self.logger_prefix = logger_prefix

        self._current_attempt = 0
        self._last_exception: Exception | None = None

    @property
    def attempts_made(self) -> int:
        """Number of attempts started so far."""
        return self._current_attempt + 1

    def __iter__(self) -> Generator[_RetryContext, None, None]:
        """Yield retry contexts for each attempt."""
        for attempt in range(self.max_retries + 1):
            self._current_attempt = attempt
            yield _RetryContext(self, attempt)

    def _should_retry(self, exception: Exception) -> bool:
        """
        Determine if an exception should trigger a retry.

        Logic:
            1. Skip retry for exceptions in skip_retry_on_exceptions
            2. Retry if the exception extends RetryableError
            3. Retry on configured exception types
        """
        if isinstance(exception, self.skip_retry_on_exceptions):
            return False

        if isinstance(exception, RetryableError):
            return True

        return isinstance(exception, self.retry_on_exceptions)

    def _calculate_wait_time(self, exception: Exception) -> float:
        """
        Calculate the wait before the next attempt.

        Uses the custom wait strategy when configured, otherwise
        exponential backoff capped at max_backoff.
        """
        if self.wait_strategy is not None:
            return max(0.0, float(self.wait_strategy(exception, self._current_attempt)))

        # Clamp the exponent so large attempt counts never overflow a float
        exponent = min(self._current_attempt, 32)
        return float(min(self.backoff_factor * (2 ** exponent), self.max_backoff))

    def _handle_retry(self, exception: Exception) -> None:
        """Log, sleep and prepare for the next attempt."""
        self._last_exception = exception
        sleep_time = self._calculate_wait_time(exception)

        prefix = f"{self.logger_prefix} | " if self.logger_prefix else ""
        logger.warning(
            f"{prefix}Attempt {self._current_attempt + 1}/{self.max_retries + 1} failed: {exception}"
        )
        logger.warning(f"{prefix}Retrying in {sleep_time:.1f}s...")
        self.sleep(sleep_time)

    def _handle_exhausted(self, exception: Exception) -> None:
        """
        Handle when all retries are exhausted.

        Raises:
            MaxRetriesExceededError: Always raised with the last exception.
        """
        self._last_exception = exception
        prefix = f"{self.logger_prefix} | " if self.logger_prefix else ""
        logger.error(
            f"{prefix}Max retries ({self.max_retries}) exceeded. Last error: {exception}"
        )
        raise MaxRetriesExceededError(
            message=f"Max retries exceeded. Last error: {exception}",
            last_exception=exception,
        ) from exception


class _RetryContext:
    """
    Context for a single retry attempt (internal).

    On success (no exception): exits normally
    On retryable exception: sleeps, suppresses exception, loop continues
    On non-retryable exception: re-raises exception
    On exhausted retries: raises MaxRetriesExceededError
    """

    def __init__(self, retrying: Retrying, attempt: int):
        self._retrying = retrying
        self.attempt = attempt

    def __enter__(self) -> RetryAttempt:
        return RetryAttempt(
            attempt_number=self.attempt,
            max_retries=self._retrying.max_retries,
        )

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> bool:
        """
        Decide whether to retry.

        Returns:
            True to suppress the exception and continue the loop,
            False to propagate it.
        """
        if exc_val is None:
            return False

        # Only handle Exception, not BaseException (KeyboardInterrupt, etc.)
        if not isinstance(exc_val, Exception):
            return False

        if not self._retrying._should_retry(exc_val):
            return False

        if self.attempt >= self._retrying.max_retries:
            self._retrying._handle_exhausted(exc_val)
            return False  # Never reached

        self._retrying._handle_retry(exc_val)
        return True
