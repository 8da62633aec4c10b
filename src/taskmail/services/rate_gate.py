"""Process-local pacing of outbound sends.

The claim batch size and handler concurrency are configured independently,
so without pacing a worker could burst past the provider's accepted rate.
The gate hands out send slots spaced at least ``1 / rate`` seconds apart.

Slot reservation happens under an asyncio.Lock, whose waiters are woken in
arrival order, so slots are granted in the order acquire() was called. The
wait for a reserved slot happens outside the lock, so a handler sleeping
until its slot never blocks others from reserving theirs.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from types import TracebackType

logger = logging.getLogger(__name__)


class RateGate:
    """FIFO slot reservation with a minimum inter-send interval.

    Example:
        gate = RateGate(2.0)  # at most 2 sends per second
        await gate.acquire()
        await client.send(message)

    Args:
        rate_per_second: Target send rate. 0 or less disables pacing.
        clock: Monotonic clock in seconds (injectable for tests).
        sleep: Coroutine used to wait (injectable for tests).
    """

    def __init__(
        self,
        rate_per_second: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        self.rate_per_second = rate_per_second
        self.interval = 1.0 / rate_per_second if rate_per_second > 0 else 0.0
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._next_slot: float | None = None

    @property
    def enabled(self) -> bool:
        return self.interval > 0

    async def acquire(self) -> float:
        """Wait for and take the next send slot.

        Returns:
            Seconds spent waiting for the slot.
        """
        if not self.enabled:
            return 0.0

        async with self._lock:
            now = self._clock()
            slot = now if self._next_slot is None else max(now, self._next_slot)
            self._next_slot = slot + self.interval

        delay = slot - now
        if delay > 0:
            logger.debug("Rate gate: waiting %.3fs for send slot", delay)
            await self._sleep(delay)
        return max(delay, 0.0)

    async def __aenter__(self) -> RateGate:
        await self.acquire()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        return None
