"""
Retry utilities for handling transient directory failures.

This module provides a retry policy built from the ``error_handling``
configuration section and a helper that applies it to a call.
"""

import time
import logging
from typing import Callable, Any, Dict, Tuple, Type, Optional

logger = logging.getLogger(__name__)


class RetryableError(Exception):
    """Base exception for errors that should trigger retries."""
    pass


class MaxRetriesExceeded(Exception):
    """Raised when maximum retry attempts are exceeded."""

    def __init__(self, attempts: int, last_exception: Exception):
        self.attempts = attempts
        self.last_exception = last_exception
        super().__init__(f"Failed after {attempts} attempts: {last_exception}")


class RetryPolicy:
    """Attempt count and delay schedule for a retried operation."""

    def __init__(self, max_attempts: int = 3, delay: float = 1.0, backoff: float = 1.0):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.delay = delay
        self.backoff = backoff

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> 'RetryPolicy':
        """
        Build a policy from the ``error_handling`` configuration section.

        ``max_retries`` counts retries, so the initial attempt is added on top.
        """
        return cls(
            max_attempts=config.get('max_retries', 3) + 1,
            delay=config.get('retry_wait_seconds', 5),
            backoff=config.get('retry_backoff', 1.0)
        )

    def with_overrides(self, max_attempts: Optional[int] = None,
                       delay: Optional[float] = None) -> 'RetryPolicy':
        return RetryPolicy(
            max_attempts=max_attempts or self.max_attempts,
            delay=self.delay if delay is None else delay,
            backoff=self.backoff
        )

    def delays(self):
        """Yield the wait before each retry."""
        current = self.delay
        for _ in range(self.max_attempts - 1):
            yield current
            current *= self.backoff

    def __repr__(self):
        return (f"RetryPolicy(max_attempts={self.max_attempts}, delay={self.delay}, "
                f"backoff={self.backoff})")


def retry_call(
    func: Callable,
    args: tuple = (),
    kwargs: dict = None,
    max_attempts: int = 3,
    delay: float = 1.0,
    backoff: float = 1.0,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    on_retry: Optional[Callable[[int, Exception], None]] = None
) -> Any:
    """
    Call a function with retry logic.

    Args:
        func: Function to call
        args: Positional arguments for function
        kwargs: Keyword arguments for function
        max_attempts: Maximum number of attempts
        delay: Initial delay between retries
        backoff: Delay multiplier for exponential backoff
        exceptions: Exception types to catch and retry on
        on_retry: Optional callback for retry events

    Returns:
        Function result

    Raises:
        MaxRetriesExceeded: If all retry attempts fail
    """
    kwargs = kwargs or {}
    waits = RetryPolicy(max_attempts, delay, backoff).delays()
    last_exception = None

    for attempt in range(1, max_attempts + 1):
        try:
            result = func(*args, **kwargs)
            if attempt > 1:
                logger.info(f"Operation succeeded on attempt {attempt}")
            return result
        except exceptions as e:
            last_exception = e
            wait = next(waits, None)
            if wait is None:
                break

            logger.debug(f"Attempt {attempt} failed with {type(e).__name__}: {e}; "
                         f"retrying in {wait:.1f} seconds")
            if on_retry:
                try:
                    on_retry(attempt, e)
                except Exception as callback_error:
                    logger.warning(f"Retry callback failed: {callback_error}")
            time.sleep(wait)

    raise MaxRetriesExceeded(max_attempts, last_exception)


def is_retryable_error(exception: Exception) -> bool:
    """
    Determine if an exception indicates a transient failure.

    Args:
        exception: Exception to check

    Returns:
        True for network errors, explicitly retryable errors and messages
        matching common transient failure patterns
    """
    if isinstance(exception, (ConnectionError, TimeoutError, RetryableError)):
        return True

    error_msg = str(exception).lower()
    transient_patterns = (
        'timeout',
        'timed out',
        'connection reset',
        'connection refused',
        'network is unreachable',
        'server is busy',
        'unavailable',
    )
    return any(pattern in error_msg for pattern in transient_patterns)


def create_retry_callback(operation_name: str) -> Callable[[int, Exception], None]:
    """
    Create a standard retry callback for logging retry attempts.

    Args:
        operation_name: Name of the operation being retried

    Returns:
        Callback function for retry events
    """
    def on_retry(attempt: int, exception: Exception):
        transient = "transient" if is_retryable_error(exception) else "non-transient"
        logger.warning(f"{operation_name} failed on attempt {attempt}, retrying after "
                       f"{transient} {type(exception).__name__}: {exception}")

    return on_retry
