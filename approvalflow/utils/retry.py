from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass


def compute_backoff(attempt: int, base: float = 1.5, jitter: float = 0.5) -> float:
    """Compute exponential backoff with jitter."""
    delay = base ** attempt
    return delay + random.uniform(0, jitter)


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff settings for retrying failed steps.

    ``base=0, jitter=0`` retries immediately, which is what tests use.
    """

    base: float = 1.5
    jitter: float = 0.5

    def delay(self, attempt: int) -> float:
        if self.base == 0 and self.jitter == 0:
            return 0.0
        return compute_backoff(attempt, base=self.base, jitter=self.jitter)

    async def wait(self, attempt: int) -> float:
        """Sleep before retry ``attempt`` (1-based) and return the delay used."""
        delay = self.delay(attempt)
        await asyncio.sleep(delay)
        return delay


def retries_allowed(
    step_attempts: int, step_retries: int, instance_retries: int, instance_budget: int
) -> bool:
    """Return whether another retry fits both the step and the instance budget."""
    return step_retries < step_attempts and instance_retries < instance_budget
