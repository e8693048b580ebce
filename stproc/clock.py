"""
Time and randomness sources for the stored-procedure runtime.

Backoff and pool bookkeeping read time through these helpers so that tests
can swap in deterministic clocks, sleepers and jitter sources.
"""

import asyncio
import random
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

SleepFunc = Callable[[float], Awaitable[None]]


def monotonic_ms() -> float:
    """Get a monotonic timestamp in milliseconds.

    Returns:
        Milliseconds from an arbitrary fixed origin
    """
    return time.monotonic() * 1000.0


def wall_time() -> datetime:
    """Get the current wall-clock time in UTC."""
    return datetime.now(timezone.utc)


async def sleep_ms(delay_ms: float) -> None:
    """Sleep for the given number of milliseconds.

    Args:
        delay_ms: The delay in milliseconds
    """
    if delay_ms > 0:
        await asyncio.sleep(delay_ms / 1000.0)


class JitterSource:
    """Process-local pseudo-random source for backoff jitter."""

    def __init__(self, seed: Optional[int] = None):
        """Initialize the jitter source.

        Args:
            seed: Optional seed, mostly useful in tests
        """
        self._random = random.Random(seed)

    def uniform(self, low: float, high: float) -> float:
        """Sample a real number uniformly from [low, high]."""
        return self._random.uniform(low, high)
