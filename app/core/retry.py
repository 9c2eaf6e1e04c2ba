"""Exponential backoff with jitter for transient failures"""

import asyncio
import random
from typing import Awaitable, Callable, Optional, TypeVar

from app.core.logging_config import get_logger
from app.schemas.connection import RetryPolicy


logger = get_logger(__name__)

T = TypeVar("T")


def calculate_retry_delay(retry_number: int, policy: RetryPolicy) -> float:
    """
    Delay in seconds before the given retry.

    ``initial * multiplier ** (retry_number - 1)`` plus uniform jitter,
    capped at ``max_delay_seconds``.

    Args:
        retry_number: 1 for the first retry, 2 for the second, ...
        policy: Backoff configuration
    """
    base = policy.initial_delay_seconds * (policy.backoff_multiplier ** (retry_number - 1))
    jitter = random.random() * policy.jitter_seconds
    return min(base + jitter, policy.max_delay_seconds)


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    policy: Optional[RetryPolicy] = None,
    is_retryable: Callable[[BaseException], bool] = lambda e: True,
    operation_name: str = "operation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run ``operation`` until it succeeds or attempts run out.

    Errors rejected by ``is_retryable`` propagate immediately. After the last
    attempt the last error propagates unchanged, so callers decide how to
    classify it.

    Args:
        operation: Zero-argument coroutine factory
        policy: Backoff configuration (defaults from settings)
        is_retryable: Predicate selecting transient errors
        operation_name: Used in log events
        sleep: Awaitable sleep, replaceable in tests

    Returns:
        Whatever ``operation`` returns
    """
    policy = policy or RetryPolicy()

    for attempt in range(1, policy.max_attempts + 1):
        try:
            return await operation()
        except Exception as e:
            if not is_retryable(e) or attempt >= policy.max_attempts:
                raise
            delay = calculate_retry_delay(attempt, policy)
            logger.warning(
                "retrying_after_transient_error",
                operation=operation_name,
                attempt=attempt,
                max_attempts=policy.max_attempts,
                delay_seconds=round(delay, 3),
                error=str(e),
            )
            await sleep(delay)

    raise RuntimeError("unreachable")  # max_attempts >= 1
