from __future__ import annotations

import asyncio
import random


def compute_backoff(
    attempt: int, base: float = 1.5, jitter: float = 0.5, cap: float = 30.0
) -> float:
    """Compute exponential backoff with jitter, bounded by ``cap``."""
    delay = min(base ** attempt, cap)
    return delay + random.uniform(0, jitter)


async def schedule_retry(attempt: int, base: float = 1.5) -> None:
    """Sleep for computed backoff delay before retrying."""
    delay = compute_backoff(attempt, base=base)
    await asyncio.sleep(delay)
