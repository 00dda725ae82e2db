import asyncio
import functools
import random
from typing import Callable, Optional, Tuple, Type

from src.exceptions import OperationalError
from src.monitoring.logger import get_logger

logger = get_logger(__name__)


async def _sleep(seconds: float) -> None:
    await asyncio.sleep(seconds)


def retry_on_transient_errors(
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_backoff: float = 10.0,
    transient_errors: Optional[Tuple[Type[Exception], ...]] = None,
    sleep: Optional[Callable] = None,
):
    """
    Decorator to retry async functions on transient errors.

    Implements exponential backoff with jitter.

    Args:
        max_retries: Maximum number of retry attempts
        base_delay: Initial wait time in seconds
        max_backoff: Maximum wait time in seconds
        transient_errors: Exception types to retry on. Defaults to
            OperationalError (network, rate limit, venue unavailable).
        sleep: Awaitable sleep; module-level _sleep when None
    """
    retry_on = transient_errors or (OperationalError,)

    def decorator(func: Callable):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            retry_count = 0
            backoff = base_delay

            while True:
                try:
                    return await func(*args, **kwargs)
                except retry_on as e:
                    if retry_count >= max_retries:
                        logger.warning(
                            "RETRIES_EXHAUSTED",
                            func=func.__name__,
                            max_retries=max_retries,
                            error=str(e),
                        )
                        raise

                    logger.warning(
                        "TRANSIENT_ERROR_RETRY",
                        func=func.__name__,
                        attempt=retry_count + 1,
                        max_retries=max_retries,
                        error=str(e),
                        wait=f"{backoff:.2f}s",
                    )
                    await (sleep or _sleep)(backoff)

                    # Exponential backoff with jitter
                    retry_count += 1
                    backoff = min(backoff * 2, max_backoff)
                    backoff += random.uniform(0, 0.5)

        return wrapper
    return decorator
