import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def calculate_next_run(
    attempts: int,
    base_delay_ms: int,
    now: datetime | None = None,
) -> datetime:
    """
    Calculates when a failed job becomes claimable again.

    Linear backoff: delay = base * attempts, where attempts is the number of
    claims so far. attempts <= 0 is treated as the first retry (delay = base).
    """
    delay_ms = base_delay_ms * max(1, attempts)
    return (now or utcnow()) + timedelta(milliseconds=delay_ms)


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    retries: int = 2,
    base_delay: float = 0.25,
    factor: float = 2,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
) -> T:
    """
    Awaits fn(), retrying up to `retries` extra times with exponential delay.
    Re-raises the last error once retries are exhausted.
    """
    attempt = 0
    while True:
        try:
            return await fn()
        except retry_on as e:
            if attempt >= retries:
                raise
            delay = base_delay * (factor ** attempt)
            logger.warning("Retrying after error (%s/%s) in %.2fs: %s", attempt + 1, retries, delay, e)
            await asyncio.sleep(delay)
            attempt += 1
