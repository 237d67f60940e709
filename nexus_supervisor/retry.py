import asyncio
from typing import Awaitable, Callable, Tuple, Type, TypeVar

from .logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


async def retry_async(
    func: Callable[[], Awaitable[T]],
    retries: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 5.0,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    operation: str = "operation",
) -> T:
    """Await ``func()`` until it succeeds, backing off exponentially between attempts.

    ``retries`` counts the extra attempts after the first one. Only errors
    matching ``retry_on`` are retried; anything else propagates at once, and
    the last error is re-raised when the attempts run out.
    """
    if retries < 0:
        raise ValueError("retries must not be negative")

    attempt = 0
    delay = base_delay
    while True:
        attempt += 1
        try:
            return await func()
        except retry_on as e:
            if attempt > retries:
                logger.error(
                    "Giving up after retries", operation=operation, attempts=attempt, error=str(e)
                )
                raise
            logger.warning(
                "Attempt failed, retrying",
                operation=operation,
                attempt=attempt,
                delay=delay,
                error=str(e),
            )
            await asyncio.sleep(delay)
            delay = min(delay * 2, max_delay)
