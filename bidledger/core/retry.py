"""
Retry policy for transient lock contention.

Only CONCURRENCY failures (LOCK_TIMEOUT, DEADLOCK) are retried, with
exponential backoff. A definitive validation failure returns immediately,
and exhausting the attempts yields MAX_RETRIES_EXCEEDED so callers can tell
contention apart from a first-attempt rule violation.
"""

import logging
import time
from typing import Callable

from bidledger.core.errors import ErrorKind, OperationResult


def backoff_delay(attempt: int, base: float) -> float:
    """Delay before the next attempt: base, 2*base, 4*base..."""
    return base * (2 ** (attempt - 1))


def run_with_retries(
    operation: Callable[[], OperationResult],
    max_retries: int,
    backoff_base: float,
    logger: logging.Logger,
    label: str,
    sleep: Callable[[float], None] = time.sleep,
) -> OperationResult:
    """
    Run an operation, retrying retryable failures.

    Args:
        operation: Single attempt returning an OperationResult
        max_retries: Total attempts allowed (at least one is made)
        backoff_base: First retry delay in seconds
        logger: Logger for retry warnings
        label: Operation name used in log lines
        sleep: Sleep function (injectable for tests)

    Returns:
        The first non-retryable result, or MAX_RETRIES_EXCEEDED
    """
    attempts = max(1, max_retries)
    last = None

    for attempt in range(1, attempts + 1):
        result = operation()
        result.attempts = attempt
        if result.success or not result.retryable:
            return result

        last = result
        if attempt < attempts:
            delay = backoff_delay(attempt, backoff_base)
            logger.warning(
                f"{label} failed with {result.error_kind.value} "
                f"(attempt {attempt}/{attempts}), retrying in {delay:.2f}s"
            )
            sleep(delay)

    logger.error(f"{label} gave up after {attempts} attempts: {last.detail}")
    exhausted = OperationResult.fail(
        ErrorKind.MAX_RETRIES_EXCEEDED,
        f"{label} failed after {attempts} attempts: {last.detail}",
        lastErrorKind=last.error_kind.value,
    )
    exhausted.attempts = attempts
    return exhausted
