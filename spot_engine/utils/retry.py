import asyncio
import functools
import random
from typing import Any, Callable, Optional, Tuple, Type

from spot_engine.exceptions import OperationalError
from spot_engine.monitoring.logger import get_logger

logger = get_logger(__name__)


def retry_on_transient_errors(
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_backoff: float = 10.0,
    transient_errors: Optional[Tuple[Type[Exception], ...]] = None,
    jitter: bool = True,
):
    """
    Decorator to retry async functions on transient errors.

    Implements exponential backoff with optional jitter. Only exceptions in
    ``transient_errors`` (default: OperationalError) are retried; everything
    else propagates on the first failure.

    Args:
        max_retries: Maximum number of retry attempts after the first call
        base_delay: Initial wait time in seconds
        max_backoff: Maximum wait time in seconds
        transient_errors: Exception types that count as transient
        jitter: Add up to 0.5s of random jitter to each wait
    """
    retryable = transient_errors or (OperationalError,)

    def decorator(func: Callable):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> Any:
            retry_count = 0
            backoff = base_delay

            while True:
                try:
                    return await func(*args, **kwargs)
                except retryable as e:
                    if retry_count >= max_retries:
                        logger.warning(
                            "RETRY_EXHAUSTED",
                            func=func.__name__,
                            max_retries=max_retries,
                            error=str(e),
                        )
                        raise

                    logger.warning(
                        "RETRY_TRANSIENT_ERROR",
                        func=func.__name__,
                        attempt=retry_count + 1,
                        max_retries=max_retries,
                        error=str(e),
                        wait=f"{backoff:.2f}s",
                    )
                    if backoff > 0:
                        await asyncio.sleep(backoff)

                    retry_count += 1
                    backoff = min(backoff * 2, max_backoff)
                    if jitter and backoff > 0:
                        backoff += random.uniform(0, 0.5)

        return wrapper
    return decorator
