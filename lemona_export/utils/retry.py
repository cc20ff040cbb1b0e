"""Retry helper for transient network failures."""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def retry_with_backoff(
    func: Callable[[], Awaitable[T]],
    max_retries: int = 3,
    base_delay: float = 1.0,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Retry an async function with exponential backoff.
    Delays: base, 2x base, 4x base ... (each plus up to 1s of jitter)

    Only exceptions listed in retry_on are retried; anything else propagates
    on the first attempt.
    """
    for attempt in range(max_retries):
        try:
            return await func()
        except retry_on as e:
            if attempt >= max_retries - 1:
                logger.error(f"[RETRY] All {max_retries} attempts failed: {e}")
                raise
            delay = base_delay * (2**attempt) + random.uniform(0, 1)
            logger.warning(f"[RETRY] Attempt {attempt + 1} failed, retrying in {delay:.1f}s: {e}")
            await sleep(delay)
    raise ValueError("max_retries must be at least 1")
