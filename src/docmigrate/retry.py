"""
Bounded retry loop with an explicit terminal outcome.

Retries are expressed as data rather than exception unwinding: the loop
returns a RetryResult whose ``outcome`` is SUCCEEDED or EXHAUSTED, so
retry budgets can be tested in isolation and callers decide what an
exhausted budget means for them.

Only errors classified as transient are retried. Anything else propagates
immediately.

Usage:
    >>> result = await run_with_retry(
    ...     lambda: store.commit(operations),
    ...     retry_config=RetryConfig(max_attempts=4, base_delay_ms=100),
    ...     deadline=time.monotonic() + 30,
    ...     operation_name="commit_batch",
    ... )
    >>> if result.outcome is RetryOutcome.EXHAUSTED:
    ...     record_failed_batch(result.last_error)
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Generic, TypeVar

from docmigrate.exceptions import MigrationError, RetryConfig, TransientStoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryOutcome(Enum):
    SUCCEEDED = "succeeded"
    EXHAUSTED = "exhausted"


@dataclass(frozen=True)
class RetryResult(Generic[T]):
    """
    Terminal outcome of a retried operation.

    Attributes:
        outcome: SUCCEEDED or EXHAUSTED.
        value: The operation's return value when it succeeded.
        attempts: Attempts made, including the successful one.
        last_error: The last transient error seen, if any.
        elapsed_ms: Wall time including backoff sleeps.
        deadline_reached: True if the loop stopped because of the deadline.
    """

    outcome: RetryOutcome
    value: T | None = None
    attempts: int = 0
    last_error: MigrationError | None = None
    elapsed_ms: float = 0.0
    deadline_reached: bool = False

    @property
    def succeeded(self) -> bool:
        return self.outcome is RetryOutcome.SUCCEEDED


def backoff_delay_ms(config: RetryConfig, attempt: int, error: MigrationError) -> float:
    """Delay before the next attempt; quota errors back off longer."""
    delay = config.get_delay_ms(attempt)
    if isinstance(error, TransientStoreError):
        delay *= error.backoff_multiplier
    return delay


async def run_with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    retry_config: RetryConfig,
    deadline: float | None = None,
    operation_name: str = "operation",
    on_retry: Callable[[int, MigrationError, float], None] | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> RetryResult[T]:
    """
    Run ``operation`` until it succeeds, the attempt budget runs out, or
    the deadline passes.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt
        retry_config: Attempt budget and backoff curve
        deadline: ``time.monotonic()`` value after which no retry is scheduled
        operation_name: Name used in log records
        on_retry: Called with (attempt, error, delay_ms) before each sleep
        sleep: Sleep function, injectable for tests

    Returns:
        RetryResult describing the terminal outcome.

    Raises:
        Exception: Any error that is not classified as retryable.
    """
    started = time.monotonic()
    last_error: MigrationError | None = None
    attempt = 0

    while attempt < retry_config.max_attempts:
        attempt += 1
        try:
            value = await operation()
        except MigrationError as e:
            if not e.is_retryable:
                raise
            last_error = e
        else:
            return RetryResult(
                outcome=RetryOutcome.SUCCEEDED,
                value=value,
                attempts=attempt,
                last_error=last_error,
                elapsed_ms=(time.monotonic() - started) * 1000,
            )

        if attempt >= retry_config.max_attempts:
            break

        delay_ms = backoff_delay_ms(retry_config, attempt - 1, last_error)
        if deadline is not None and time.monotonic() + delay_ms / 1000 > deadline:
            logger.warning(
                "%s: deadline reached after %d attempt(s): %s",
                operation_name,
                attempt,
                last_error,
            )
            return RetryResult(
                outcome=RetryOutcome.EXHAUSTED,
                attempts=attempt,
                last_error=last_error,
                elapsed_ms=(time.monotonic() - started) * 1000,
                deadline_reached=True,
            )

        logger.info(
            "%s: attempt %d/%d failed (%s), retrying in %.0fms",
            operation_name,
            attempt,
            retry_config.max_attempts,
            last_error.error_code,
            delay_ms,
        )
        if on_retry is not None:
            on_retry(attempt, last_error, delay_ms)
        await sleep(delay_ms / 1000)

    logger.warning(
        "%s: retries exhausted after %d attempt(s): %s",
        operation_name,
        attempt,
        last_error,
    )
    return RetryResult(
        outcome=RetryOutcome.EXHAUSTED,
        attempts=attempt,
        last_error=last_error,
        elapsed_ms=(time.monotonic() - started) * 1000,
    )


__all__ = [
    "RetryOutcome",
    "RetryResult",
    "backoff_delay_ms",
    "run_with_retry",
]
