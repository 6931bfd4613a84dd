from __future__ import annotations

import asyncio
import random

from ..contracts import RetryPolicy


def compute_backoff(attempt: int, base: float = 1.5, jitter: float = 0.5) -> float:
    """Compute exponential backoff with jitter."""
    delay = base ** attempt
    return delay + random.uniform(0, jitter)


async def schedule_retry(attempt: int, policy: RetryPolicy) -> None:
    """Sleep for the policy's backoff delay before re-running an action."""
    delay = compute_backoff(attempt, base=policy.backoff_base, jitter=policy.jitter)
    await asyncio.sleep(delay)
