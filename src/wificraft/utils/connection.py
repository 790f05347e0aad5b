"""Retry policy for calls into vendor controller APIs.

Only transport failures are retried. Errors the API reports about the
request itself (bad payload, unknown device) surface on the first attempt.
"""
import asyncio
import logging
from functools import wraps
from typing import Any, Callable, TypeVar

from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_EXCEPTIONS = (
    ConnectionError,
    TimeoutError,
    OSError,
    EOFError,
)

# Failures that prove the request never reached the controller. Writes that
# are not idempotent (WLAN create, device assign) retry only on these.
CONNECT_EXCEPTIONS = (
    ConnectionRefusedError,
)


def _policy(max_attempts: int, min_wait: float, max_wait: float, exceptions: tuple) -> Callable:
    return retry(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=1, min=min_wait, max=max_wait),
        retry=retry_if_exception_type(exceptions),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )


def with_retry(
    max_attempts: int = 3,
    min_wait: float = 1,
    max_wait: float = 10,
    exceptions: tuple = RETRYABLE_EXCEPTIONS,
) -> Callable:
    """Decorator factory: retry with exponential backoff, re-raising the last error.

    Args:
        max_attempts: Attempts including the first call
        min_wait: Lower bound between attempts (seconds)
        max_wait: Upper bound between attempts (seconds)
        exceptions: Exception types that trigger another attempt
    """
    policy = _policy(max_attempts, min_wait, max_wait, exceptions)

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        if asyncio.iscoroutinefunction(func):
            @policy
            @wraps(func)
            async def async_wrapper(*args: Any, **kwargs: Any) -> T:
                return await func(*args, **kwargs)  # type: ignore[misc]
            return async_wrapper  # type: ignore[return-value]

        @policy
        @wraps(func)
        def sync_wrapper(*args: Any, **kwargs: Any) -> T:
            return func(*args, **kwargs)
        return sync_wrapper

    return decorator


async def call_with_retry(
    func: Callable[..., Any],
    *args: Any,
    max_attempts: int = 3,
    min_wait: float = 1,
    max_wait: float = 10,
    exceptions: tuple = RETRYABLE_EXCEPTIONS,
    **kwargs: Any,
) -> Any:
    """Await ``func(*args, **kwargs)`` under the retry policy.

    For collaborator methods, which are not decorated where they are defined.
    """
    wrapped = with_retry(
        max_attempts=max_attempts, min_wait=min_wait, max_wait=max_wait, exceptions=exceptions
    )(func)
    return await wrapped(*args, **kwargs)
