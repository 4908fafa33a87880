"""
Amora — core/retry.py
Bounded retry with exponential backoff for idempotent DB writes.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Tuple, Type, TypeVar

from amora.core.config import cfg

logger = logging.getLogger("amora.retry")

T = TypeVar("T")


async def retry_async(
    fn:           Callable[[], Awaitable[T]],
    attempts:     int = None,
    delay:        float = None,
    retry_on:     Tuple[Type[BaseException], ...] = (Exception,),
    label:        str = "operation",
) -> T:
    """
    Call `fn` up to `attempts` times, sleeping delay, 2*delay, 4*delay ...
    between failures. The last failure is re-raised.
    """
    attempts = attempts if attempts is not None else cfg.MAX_RETRY
    delay    = delay if delay is not None else cfg.RETRY_DELAY

    for attempt in range(1, attempts + 1):
        try:
            return await fn()
        except retry_on as e:
            if attempt >= attempts:
                logger.error(f"{label} failed after {attempts} attempts: {e}")
                raise
            wait = delay * (2 ** (attempt - 1))
            logger.warning(f"{label} failed (attempt {attempt}/{attempts}), retrying in {wait:.2f}s: {e}")
            await asyncio.sleep(wait)

    raise RuntimeError("retry_async called with attempts < 1")
