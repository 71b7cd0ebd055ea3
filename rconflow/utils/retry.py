from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def compute_backoff(attempt: int, base: float = 1.5, jitter: float = 0.5) -> float:
    """Compute exponential backoff with jitter."""
    delay = base ** attempt
    return delay + random.uniform(0, jitter)


async def schedule_retry(attempt: int, scale: float = 1.0) -> None:
    """Sleep for computed backoff delay before retrying."""
    delay = compute_backoff(attempt) * scale
    await asyncio.sleep(delay)


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    attempts: int,
    description: str,
    scale: float = 1.0,
) -> Optional[T]:
    """Run ``operation`` up to ``attempts`` times.

    Returns ``None`` after the final failure, which is logged at ERROR.
    """
    attempts = max(1, attempts)
    for attempt in range(attempts):
        try:
            return await operation()
        except Exception as e:
            if attempt + 1 >= attempts:
                logger.error(f"Giving up on {description} after {attempts} attempts: {e}")
                return None
            logger.warning(f"{description} failed (attempt {attempt + 1}): {e}")
            await schedule_retry(attempt, scale=scale)
    return None
