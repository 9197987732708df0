"""
Per-host crawl-delay limiter.

Workers reserve the next fetch slot for a host under a lock, then sleep
until that slot in small increments, polling an abort callback between
increments so pause/stop is observed within one increment.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable

from seocrawl.constants import DELAY_CHECK_INTERVAL_SECONDS

logger = logging.getLogger(__name__)

AbortCheck = Callable[[], Awaitable[bool]]


@dataclass
class DelayMetrics:
    """Wait statistics for the limiter."""
    hosts_tracked: int
    total_waits: int
    total_wait_time: float
    aborted_waits: int


class CrawlDelayLimiter:
    """
    Spaces fetches to the same host by its crawl delay.

    Features:
    - Slot reservation so concurrent workers queue up behind each other
    - Interruptible waits in fixed increments
    """

    def __init__(self, check_interval: float = DELAY_CHECK_INTERVAL_SECONDS):
        """
        Initialize limiter.

        Args:
            check_interval: Seconds between abort checks while waiting
        """
        self.check_interval = check_interval
        self._next_slot: dict[str, float] = {}
        self._lock = asyncio.Lock()

        # Statistics
        self._total_waits = 0
        self._total_wait_time = 0.0
        self._aborted_waits = 0

    async def reserve(self, host: str, delay: float) -> float:
        """
        Reserve the next fetch slot for a host.

        Args:
            host: Target host
            delay: Seconds that must separate consecutive fetches

        Returns:
            Seconds until the reserved slot
        """
        async with self._lock:
            now = time.monotonic()
            slot = max(now, self._next_slot.get(host, 0.0))
            self._next_slot[host] = slot + max(delay, 0.0)
            return slot - now

    async def wait(
        self,
        host: str,
        delay: float,
        should_abort: AbortCheck | None = None,
    ) -> bool:
        """
        Wait for this host's next slot.

        Args:
            host: Target host
            delay: Crawl delay for the host (seconds)
            should_abort: Async callback; a True result ends the wait early

        Returns:
            True if the wait completed, False if it was aborted
        """
        remaining = await self.reserve(host, delay)
        if remaining <= 0:
            return True

        self._total_waits += 1
        while remaining > 0:
            step = min(self.check_interval, remaining)
            await asyncio.sleep(step)
            remaining -= step
            self._total_wait_time += step

            if should_abort is not None and await should_abort():
                self._aborted_waits += 1
                logger.debug(f"Crawl-delay wait for {host} aborted")
                return False

        return True

    def forget(self, host: str) -> None:
        """Drop the reservation state for a host."""
        self._next_slot.pop(host, None)

    def get_metrics(self) -> DelayMetrics:
        """Get wait statistics."""
        return DelayMetrics(
            hosts_tracked=len(self._next_slot),
            total_waits=self._total_waits,
            total_wait_time=self._total_wait_time,
            aborted_waits=self._aborted_waits,
        )
