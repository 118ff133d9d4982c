"""Tests for the priority-aware request limiter."""

import asyncio

import pytest

pytest.importorskip("aiohttp")

from common.http_client import HttpClient, PriorityLimiter


class TestPriorityLimiter:
    """Lower priority values are served first; ties keep arrival order."""

    def test_waiters_served_by_priority(self):
        order = []

        async def waiter(limiter, name, priority):
            async with limiter.slot(priority):
                order.append(name)

        async def scenario():
            limiter = PriorityLimiter(1)
            await limiter.acquire()
            tasks = [
                asyncio.ensure_future(waiter(limiter, "low", 5)),
                asyncio.ensure_future(waiter(limiter, "high-1", 1)),
                asyncio.ensure_future(waiter(limiter, "high-2", 1)),
            ]
            await asyncio.sleep(0.01)
            limiter.release()
            await asyncio.gather(*tasks)
            return limiter.active

        active = asyncio.run(scenario())

        assert order == ["high-1", "high-2", "low"]
        assert active == 0

    def test_limit_is_enforced(self):
        peak = []

        async def worker(limiter):
            async with limiter.slot():
                peak.append(limiter.active)
                await asyncio.sleep(0.01)

        async def scenario():
            limiter = PriorityLimiter(2)
            await asyncio.gather(*(worker(limiter) for _ in range(6)))

        asyncio.run(scenario())

        assert max(peak) == 2

    def test_invalid_limit(self):
        with pytest.raises(ValueError):
            PriorityLimiter(0)


class TestHttpClientLifecycle:
    def test_stop_without_start(self):
        asyncio.run(HttpClient("pkgstore/test").stop())

    def test_context_manager_opens_and_closes_session(self):
        async def scenario():
            async with HttpClient("pkgstore/test") as client:
                opened = client._session is not None
            return opened, client._session

        opened, session = asyncio.run(scenario())

        assert opened is True
        assert session is None
