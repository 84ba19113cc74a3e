from __future__ import annotations

import asyncio


def compute_backoff(attempt: int, base: float = 0.1) -> float:
    """Compute a linear backoff delay for the given 1-based attempt."""
    return base * attempt


async def schedule_retry(attempt: int, base: float = 0.1) -> None:
    """Sleep for computed backoff delay before retrying."""
    delay = compute_backoff(attempt, base)
    if delay > 0:
        await asyncio.sleep(delay)
