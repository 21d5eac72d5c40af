"""
Retry logic with exponential backoff.

Used for outbound calls that may fail transiently: event webhook delivery
and the side-effect queue's dispatch attempts.
"""

import asyncio
import functools
import inspect
import logging
import random
from dataclasses import dataclass
from typing import Any, Callable, Tuple, Type

import aiohttp

logger = logging.getLogger(__name__)


class RetryExhausted(Exception):
    """Raised when all retry attempts are exhausted."""
    pass


def backoff_delay(
    attempt: int,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    jitter: bool = True,
) -> float:
    """Delay before retry number `attempt` (0-based)."""
    delay = min(base_delay * (exponential_base ** attempt), max_delay)
    if jitter:
        delay = delay * (0.5 + random.random())
    return delay


@dataclass(frozen=True)
class RetryPolicy:
    """How many times to retry a call, how long to wait, and on which errors."""

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    exponential_base: float = 2.0
    jitter: bool = True
    retry_on: Tuple[Type[Exception], ...] = (Exception,)
    skip_on: Tuple[Type[Exception], ...] = ()

    @property
    def attempts(self) -> int:
        return self.max_retries + 1

    def delay(self, attempt: int) -> float:
        return backoff_delay(
            attempt, self.base_delay, self.max_delay, self.exponential_base, self.jitter
        )


async def _call(func: Callable, args, kwargs) -> Any:
    if inspect.iscoroutinefunction(func):
        return await func(*args, **kwargs)
    return func(*args, **kwargs)


async def run_with_policy(policy: RetryPolicy, func: Callable, *args, **kwargs) -> Any:
    """
    Call `func` until it succeeds or the policy gives up.

    Errors in `policy.skip_on` and errors outside `policy.retry_on` are raised
    unchanged on the first occurrence.

    Raises:
        RetryExhausted: If every attempt failed with a retryable error
    """
    name = getattr(func, "__name__", repr(func))

    for attempt in range(policy.attempts):
        try:
            result = await _call(func, args, kwargs)
        except policy.skip_on as e:
            logger.warning(f"Not retrying {name}: {type(e).__name__}: {e}")
            raise
        except policy.retry_on as e:
            if attempt + 1 == policy.attempts:
                logger.error(f"{name} failed {policy.attempts} times, giving up")
                raise RetryExhausted(
                    f"Failed after {policy.attempts} attempts: {type(e).__name__}: {e}"
                ) from e

            delay = policy.delay(attempt)
            logger.warning(
                f"{name} attempt {attempt + 1}/{policy.attempts} raised "
                f"{type(e).__name__}: {e}; next try in {delay:.2f}s"
            )
            await asyncio.sleep(delay)
        else:
            if attempt:
                logger.info(f"{name} succeeded on attempt {attempt + 1}/{policy.attempts}")
            return result


async def retry_with_backoff(func: Callable, *args, **kwargs) -> Any:
    """
    Execute a function with exponential backoff retry logic.

    Keyword arguments matching `RetryPolicy` fields configure the retries;
    the rest are passed through to `func`.
    """
    policy_fields = {
        key: kwargs.pop(key)
        for key in list(kwargs)
        if key in RetryPolicy.__dataclass_fields__
    }
    return await run_with_policy(RetryPolicy(**policy_fields), func, *args, **kwargs)


def with_retry(policy: RetryPolicy = None, **options):
    """
    Decorator form of run_with_policy for async functions.

    Usage:
        @with_retry(max_retries=5, base_delay=2.0, retry_on=(ConnectionError,))
        async def deliver(payload):
            ...
    """
    policy = policy or RetryPolicy(**options)

    def decorator(func: Callable):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            return await run_with_policy(policy, func, *args, **kwargs)
        return wrapper
    return decorator


# Event webhook: a handful of quick retries, the side-effect queue covers longer outages
WEBHOOK_RETRY = RetryPolicy(
    max_retries=3,
    base_delay=1.0,
    max_delay=15.0,
    retry_on=(aiohttp.ClientError, asyncio.TimeoutError, ConnectionError),
)

with_webhook_retry = with_retry(WEBHOOK_RETRY)
