"""Retry policy shared by the provider adapters."""

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterator, TypeVar

from parley.utils.errors import ProviderError, TransportError
from parley.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

RETRYABLE_STATUS_CODES = frozenset({408, 429})


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff_seconds: float = 2.0  # linear: backoff_seconds * attempt

    def delays(self) -> Iterator[float]:
        for attempt in range(1, self.max_attempts):
            yield self.backoff_seconds * attempt


SINGLE_ATTEMPT = RetryPolicy(max_attempts=1)


def is_retryable(error: Exception) -> bool:
    """Transport failures and transient provider statuses are retried."""
    if isinstance(error, TransportError):
        return True
    if isinstance(error, ProviderError) and error.status_code is not None:
        return error.status_code in RETRYABLE_STATUS_CODES or error.status_code >= 500
    return False


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    label: str = "request",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run ``operation`` until it succeeds or the policy's attempt budget is spent.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt.
        policy: Attempt budget and backoff.
        label: Short description used in log lines.
        sleep: Awaitable sleep, replaceable in tests.

    Returns:
        Whatever ``operation`` returns on the first successful attempt.

    Raises:
        The last error raised by ``operation`` once attempts are exhausted,
        or immediately for errors that are not retryable.
    """
    delays = list(policy.delays())
    attempt = 1
    while True:
        try:
            return await operation()
        except (TransportError, ProviderError) as e:
            if attempt > len(delays) or not is_retryable(e):
                raise
            delay = delays[attempt - 1]
            logger.warning(
                f"{label} failed on attempt {attempt}/{policy.max_attempts}: {e}; "
                f"retrying in {delay:.1f}s"
            )
            await sleep(delay)
            attempt += 1
