"""
Unit tests for request coalescing and background task tracking.
"""

import asyncio
import logging

import pytest

from repocache.coalesce import RequestCoalescer
from repocache.tasks import BackgroundTasks


class TestRequestCoalescer:
    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_call(self):
        coalescer = RequestCoalescer()
        release = asyncio.Event()
        calls = 0

        async def factory():
            nonlocal calls
            calls += 1
            await release.wait()
            return {"items": [1, 2, 3]}

        waiters = [asyncio.ensure_future(coalescer.run("search:x", factory)) for _ in range(5)]
        await asyncio.sleep(0)
        assert coalescer.in_flight("search:x")

        release.set()
        results = await asyncio.gather(*waiters)

        assert calls == 1
        assert all(result is results[0] for result in results)

    @pytest.mark.asyncio
    async def test_failure_reaches_every_waiter(self):
        coalescer = RequestCoalescer()
        release = asyncio.Event()

        async def factory():
            await release.wait()
            raise RuntimeError("upstream down")

        waiters = [asyncio.ensure_future(coalescer.run("k", factory)) for _ in range(5)]
        await asyncio.sleep(0)
        release.set()
        results = await asyncio.gather(*waiters, return_exceptions=True)

        assert len(results) == 5
        assert all(isinstance(r, RuntimeError) for r in results)
        assert len({id(r) for r in results}) == 1

    @pytest.mark.asyncio
    async def test_entry_removed_after_settling(self):
        coalescer = RequestCoalescer()
        calls = 0

        async def factory():
            nonlocal calls
            calls += 1
            return calls

        assert await coalescer.run("k", factory) == 1
        await asyncio.sleep(0)
        assert len(coalescer) == 0

        # a later caller starts a fresh call
        assert await coalescer.run("k", factory) == 2

    @pytest.mark.asyncio
    async def test_distinct_keys_do_not_share(self):
        coalescer = RequestCoalescer()

        async def factory_a():
            return "a"

        async def factory_b():
            return "b"

        results = await asyncio.gather(
            coalescer.run("a", factory_a), coalescer.run("b", factory_b)
        )
        assert results == ["a", "b"]

    @pytest.mark.asyncio
    async def test_cancelled_waiter_does_not_cancel_others(self):
        coalescer = RequestCoalescer()
        release = asyncio.Event()

        async def factory():
            await release.wait()
            return "done"

        first = asyncio.ensure_future(coalescer.run("k", factory))
        second = asyncio.ensure_future(coalescer.run("k", factory))
        await asyncio.sleep(0)

        first.cancel()
        release.set()

        assert await second == "done"
        with pytest.raises(asyncio.CancelledError):
            await first


class TestBackgroundTasks:
    @pytest.mark.asyncio
    async def test_drain_waits_for_tasks(self):
        tasks = BackgroundTasks()
        done = []

        async def work():
            await asyncio.sleep(0)
            done.append(True)

        tasks.spawn(work(), name="work")
        assert tasks.pending == 1

        await tasks.drain()

        assert done == [True]
        assert tasks.pending == 0

    @pytest.mark.asyncio
    async def test_failures_are_logged_not_raised(self, caplog):
        tasks = BackgroundTasks()

        async def broken():
            raise RuntimeError("disk full")

        with caplog.at_level(logging.ERROR):
            tasks.spawn(broken(), name="persist:test")
            await tasks.drain()

        assert "persist:test" in caplog.text
        assert "disk full" in caplog.text
