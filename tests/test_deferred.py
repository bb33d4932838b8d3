"""Tests for spanlog.deferred: single-flight async cells."""

from __future__ import annotations

import asyncio

import pytest

from spanlog.deferred import DeferredValue


class TestDeferredValue:
    @pytest.mark.asyncio
    async def test_producer_runs_once_for_concurrent_callers(self):
        calls = 0

        async def produce():
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.01)
            return "project-1"

        cell = DeferredValue(produce)
        results = await asyncio.gather(*(cell.get() for _ in range(5)))

        assert results == ["project-1"] * 5
        assert calls == 1
        assert await cell.get() == "project-1"
        assert calls == 1

    @pytest.mark.asyncio
    async def test_has_computed_flips_when_resolution_starts(self):
        started = asyncio.Event()
        release = asyncio.Event()

        async def produce():
            started.set()
            await release.wait()
            return 42

        cell = DeferredValue(produce)
        assert cell.has_computed is False

        waiter = asyncio.ensure_future(cell.get())
        await started.wait()
        assert cell.has_computed is True
        assert not waiter.done()

        release.set()
        assert await waiter == 42

    @pytest.mark.asyncio
    async def test_failure_is_shared_and_not_retried(self):
        calls = 0

        async def produce():
            nonlocal calls
            calls += 1
            raise RuntimeError("registration failed")

        cell = DeferredValue(produce)
        results = await asyncio.gather(cell.get(), cell.get(), return_exceptions=True)

        assert all(isinstance(r, RuntimeError) for r in results)
        with pytest.raises(RuntimeError, match="registration failed"):
            await cell.get()
        assert calls == 1

    @pytest.mark.asyncio
    async def test_cancelled_waiter_does_not_cancel_computation(self):
        release = asyncio.Event()

        async def produce():
            await release.wait()
            return "done"

        cell = DeferredValue(produce)
        first = asyncio.ensure_future(cell.get())
        await asyncio.sleep(0)
        first.cancel()
        with pytest.raises(asyncio.CancelledError):
            await first

        release.set()
        assert await cell.get() == "done"

    @pytest.mark.asyncio
    async def test_resolved_cell(self):
        cell = DeferredValue.resolved({"id": "x"})
        assert cell.has_computed is True
        assert await cell.get() == {"id": "x"}
