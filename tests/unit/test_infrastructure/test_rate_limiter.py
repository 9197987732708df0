"""Unit tests for CrawlDelayLimiter."""

import asyncio
import time

import pytest

pytest_plugins = ('pytest_asyncio',)

from seocrawl.infrastructure.rate_limiter import CrawlDelayLimiter, DelayMetrics


class TestReserve:
    """Tests for slot reservation."""

    @pytest.mark.asyncio
    async def test_first_request_is_immediate(self):
        """A host's first slot is now."""
        limiter = CrawlDelayLimiter()

        assert await limiter.reserve("example.com", 2.0) <= 0

    @pytest.mark.asyncio
    async def test_consecutive_slots_are_spaced(self):
        """Each reservation pushes the next slot back by the delay."""
        limiter = CrawlDelayLimiter()

        await limiter.reserve("example.com", 2.0)
        second = await limiter.reserve("example.com", 2.0)
        third = await limiter.reserve("example.com", 2.0)

        assert 1.9 < second <= 2.0
        assert 3.9 < third <= 4.0

    @pytest.mark.asyncio
    async def test_hosts_are_independent(self):
        """Delays apply per host."""
        limiter = CrawlDelayLimiter()

        await limiter.reserve("a.com", 5.0)

        assert await limiter.reserve("b.com", 5.0) <= 0

    @pytest.mark.asyncio
    async def test_zero_delay(self):
        """A zero delay never waits."""
        limiter = CrawlDelayLimiter()

        for _ in range(3):
            assert await limiter.reserve("example.com", 0.0) <= 0

    @pytest.mark.asyncio
    async def test_forget(self):
        """Forgetting a host resets its slot."""
        limiter = CrawlDelayLimiter()
        await limiter.reserve("example.com", 5.0)

        limiter.forget("example.com")

        assert await limiter.reserve("example.com", 5.0) <= 0


class TestWait:
    """Tests for interruptible waits."""

    @pytest.mark.asyncio
    async def test_wait_spaces_requests(self):
        """The second wait lasts about one delay."""
        limiter = CrawlDelayLimiter(check_interval=0.01)

        assert await limiter.wait("example.com", 0.05)
        start = time.monotonic()
        assert await limiter.wait("example.com", 0.05)

        assert time.monotonic() - start >= 0.04

    @pytest.mark.asyncio
    async def test_wait_aborts(self):
        """A True abort check ends the wait early."""
        limiter = CrawlDelayLimiter(check_interval=0.01)
        await limiter.wait("example.com", 10.0)

        async def abort():
            return True

        start = time.monotonic()
        completed = await limiter.wait("example.com", 10.0, should_abort=abort)

        assert completed is False
        assert time.monotonic() - start < 1.0
        assert limiter.get_metrics().aborted_waits == 1

    @pytest.mark.asyncio
    async def test_concurrent_waiters_queue_up(self):
        """Concurrent workers for one host are served one delay apart."""
        limiter = CrawlDelayLimiter(check_interval=0.01)
        finished = []

        async def worker(name):
            await limiter.wait("example.com", 0.05)
            finished.append((name, time.monotonic()))

        await asyncio.gather(*(worker(i) for i in range(3)))

        times = sorted(t for _, t in finished)
        assert times[2] - times[0] >= 0.08

    @pytest.mark.asyncio
    async def test_metrics(self):
        """Waits are counted."""
        limiter = CrawlDelayLimiter(check_interval=0.01)
        await limiter.wait("example.com", 0.02)
        await limiter.wait("example.com", 0.02)

        metrics = limiter.get_metrics()

        assert isinstance(metrics, DelayMetrics)
        assert metrics.hosts_tracked == 1
        assert metrics.total_waits == 1
        assert metrics.total_wait_time > 0
