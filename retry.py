"""
Retry Module
============
Bounded async retry with exponential backoff and a per-attempt timeout.

A timed-out attempt counts as a failure, never a success.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional, Tuple, Type

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry configuration.

    max_retries counts retries after the first attempt, so the total
    attempt count is max_retries + 1. Delay before retry n (1-based) is
    backoff_base * 2 ** (n - 1): 1s, 2s, 4s with the defaults.
    """
    max_retries: int = 3
    backoff_base: float = 1.0
    attempt_timeout: Optional[float] = 8.0
    retry_on: Tuple[Type[BaseException], ...] = (Exception,)

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def delay_for(self, retry_number: int) -> float:
        """Backoff before the given retry (1-based)."""
        return self.backoff_base * (2 ** (retry_number - 1))


class RetryExhaustedError(Exception):
    """Raised when every attempt failed."""

    def __init__(self, attempts: int, last_error: BaseException):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Failed after {attempts} attempts: {last_error}"
        )


@dataclass
class RetryOutcome:
    """Value plus bookkeeping from a successful retry run."""
    value: Any
    attempts: int
    errors: List[BaseException] = field(default_factory=list)


async def retry_async(
    operation: Callable[[], Awaitable[Any]],
    policy: RetryPolicy,
    description: str = "operation",
    on_retry: Optional[Callable[[int, BaseException], None]] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
) -> RetryOutcome:
    """
    Run an async operation with bounded retries.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt
        policy: Retry policy
        description: Label for log messages
        on_retry: Called with (retry_number, error) before each backoff
        sleep: Sleep function (injectable for tests)

    Returns:
        RetryOutcome with the operation's value

    Raises:
        RetryExhaustedError: If all attempts failed
    """
    errors: List[BaseException] = []

    for attempt in range(1, policy.max_attempts + 1):
        try:
            if policy.attempt_timeout is not None:
                value = await asyncio.wait_for(operation(), timeout=policy.attempt_timeout)
            else:
                value = await operation()
            return RetryOutcome(value=value, attempts=attempt, errors=errors)

        except asyncio.TimeoutError as e:
            error: BaseException = TimeoutError(
                f"{description} timed out after {policy.attempt_timeout}s"
            )
            error.__cause__ = e
        except policy.retry_on as e:
            error = e

        errors.append(error)
        logger.warning(
            f"{description} failed (attempt {attempt}/{policy.max_attempts}): {str(error)}"
        )

        if attempt < policy.max_attempts:
            delay = policy.delay_for(attempt)
            if on_retry is not None:
                on_retry(attempt, error)
            await sleep(delay)

    raise RetryExhaustedError(policy.max_attempts, errors[-1])
