import asyncio
import logging
from functools import wraps
from typing import Callable, Optional


def async_retry(
    max_retries: int = 3,
    delay: float = 1.0,
    retry_on: Optional[Callable[[Exception], bool]] = None,
    on_retry: Optional[Callable[[int, Exception], None]] = None,
):
    """
    Decorator for async retry logic with exponential backoff.

    Args:
        max_retries: Total number of attempts
        delay: Base delay in seconds, doubled after each failed attempt
        retry_on: Predicate selecting retryable exceptions (all if None)
        on_retry: Called with (attempt, exception) before sleeping
    """
    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            for attempt in range(max_retries):
                try:
                    return await func(*args, **kwargs)
                except Exception as e:
                    retryable = retry_on is None or retry_on(e)
                    if not retryable or attempt >= max_retries - 1:
                        raise
                    if on_retry:
                        on_retry(attempt + 1, e)
                    else:
                        logging.getLogger(func.__module__).warning(
                            f"{func.__name__} failed (attempt {attempt + 1}/{max_retries}): {e}"
                        )
                    await asyncio.sleep(delay * (2 ** attempt))  # Exponential backoff
        return wrapper
    return decorator
