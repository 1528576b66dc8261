"""Retry decorator with exponential backoff."""

import logging
import time
from functools import wraps
from typing import Any, Callable

logger = logging.getLogger(__name__)


def retry(
    max_attempts: int | Callable[[Any], int] = 3,
    delay: float = 1.0,
    backoff: float = 2.0,
    exceptions: tuple[type[Exception], ...] = (Exception,),
    should_retry: Callable[[Exception], bool] | None = None,
) -> Callable:
    """Retry the wrapped call on selected exceptions.

    Args:
        max_attempts: Attempts in total, or a callable receiving the bound
            instance (first positional argument) and returning the count
        delay: Initial delay in seconds
        backoff: Multiplier applied to the delay after each failure
        exceptions: Exception types that trigger a retry
        should_retry: Optional predicate to reject retries for some errors

    Example:
        @retry(max_attempts=3, delay=1, backoff=2, exceptions=(TransportError,))
        def fetch_page(...):
            ...
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            attempts = max_attempts(args[0]) if callable(max_attempts) else max_attempts
            attempt = 0
            current_delay = delay

            while True:
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    attempt += 1
                    if attempt >= attempts or (should_retry and not should_retry(e)):
                        raise

                    logger.warning(
                        "%s failed, retrying in %.1fs (%d/%d): %s",
                        func.__name__, current_delay, attempt, attempts, e,
                    )
                    time.sleep(current_delay)
                    current_delay *= backoff

        return wrapper
    return decorator
