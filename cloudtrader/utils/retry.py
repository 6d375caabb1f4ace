import asyncio
import functools
import random
from typing import Type, Tuple, Optional, Callable, Any, Awaitable

from cloudtrader.exceptions import OperationalError
from cloudtrader.monitoring.logger import get_logger

logger = get_logger(__name__)


async def call_with_retry(
    func: Callable[..., Awaitable[Any]],
    *args,
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_backoff: float = 10.0,
    transient_errors: Tuple[Type[Exception], ...] = (OperationalError,),
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    jitter: float = 0.5,
    **kwargs,
) -> Any:
    """
    Await `func(*args, **kwargs)`, retrying transient errors.

    Implements exponential backoff with jitter. `max_retries` counts retries,
    so the call is attempted at most `max_retries + 1` times. Errors outside
    `transient_errors` propagate immediately.
    """
    retry_count = 0
    backoff = base_delay
    name = getattr(func, "__name__", repr(func))

    while True:
        try:
            return await func(*args, **kwargs)
        except transient_errors as e:
            if retry_count >= max_retries:
                logger.warning(
                    f"Max retries ({max_retries}) exhausted for {name}",
                    error=str(e)
                )
                raise

            logger.warning(
                f"Transient error in {name}, retrying ({retry_count + 1}/{max_retries})",
                error=str(e),
                wait=f"{backoff:.2f}s"
            )

            await sleep(backoff)

            retry_count += 1
            backoff = min(backoff * 2, max_backoff)
            if jitter:
                backoff += random.uniform(0, jitter)


def retry_on_transient_errors(
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_backoff: float = 10.0,
    transient_errors: Optional[Tuple[Type[Exception], ...]] = None
):
    """
    Decorator form of call_with_retry for async functions.

    Args:
        max_retries: Maximum number of retry attempts
        base_delay: Initial wait time in seconds
        max_backoff: Maximum wait time in seconds
        transient_errors: Tuple of exception types to retry on (default OperationalError)
    """
    errors = transient_errors or (OperationalError,)

    def decorator(func: Callable):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            return await call_with_retry(
                func,
                *args,
                max_retries=max_retries,
                base_delay=base_delay,
                max_backoff=max_backoff,
                transient_errors=errors,
                **kwargs,
            )
        return wrapper
    return decorator
