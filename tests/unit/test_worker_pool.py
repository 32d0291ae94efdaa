"""
Unit tests for the bounded worker pool.
"""

import asyncio

import pytest

from kbingest.core.concurrent_processor import WorkerPool


class TestWorkerPool:
    """Test concurrency bounds, ordering and cooperative stop."""

    def test_pool_size_bounds(self):
        with pytest.raises(ValueError):
            WorkerPool(max_workers=0)

        with pytest.raises(ValueError):
            WorkerPool(max_workers=65)

    @pytest.mark.asyncio
    async def test_results_in_input_order(self):
        pool = WorkerPool(max_workers=3)

        async def handler(unit):
            await asyncio.sleep(0.001 * (5 - unit))
            return unit * 10

        outcomes = await pool.run(range(5), handler)

        assert [o.unit for o in outcomes] == [0, 1, 2, 3, 4]
        assert [o.result for o in outcomes] == [0, 10, 20, 30, 40]
        assert all(o.succeeded for o in outcomes)

    @pytest.mark.asyncio
    async def test_concurrency_never_exceeds_limit(self):
        pool = WorkerPool(max_workers=2)
        active = 0
        peak = 0

        async def handler(unit):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.005)
            active -= 1

        await pool.run(range(8), handler)

        assert peak <= 2
        assert pool.stats.peak_concurrency <= 2

    @pytest.mark.asyncio
    async def test_limit_is_shared_across_runs(self):
        pool = WorkerPool(max_workers=2)
        active = 0
        peak = 0

        async def handler(unit):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.005)
            active -= 1

        await asyncio.gather(pool.run(range(4), handler), pool.run(range(4), handler))

        assert peak <= 2
        assert pool.stats.completed_units == 8

    @pytest.mark.asyncio
    async def test_failures_do_not_stop_siblings(self):
        pool = WorkerPool(max_workers=2)

        async def handler(unit):
            if unit == 1:
                raise RuntimeError("unit failed")
            return unit

        outcomes = await pool.run(range(4), handler)

        assert [o.succeeded for o in outcomes] == [True, False, True, True]
        assert str(outcomes[1].error) == "unit failed"
        assert pool.stats.failed_units == 1

    @pytest.mark.asyncio
    async def test_stop_skips_remaining_units(self):
        pool = WorkerPool(max_workers=1)
        stop = False
        seen = []

        async def handler(unit):
            nonlocal stop
            seen.append(unit)
            if unit == 2:
                stop = True
            return unit

        outcomes = await pool.run(range(6), handler, should_stop=lambda: stop)

        assert seen == [0, 1, 2]
        assert [o.skipped for o in outcomes] == [False, False, False, True, True, True]
        assert pool.stats.skipped_units == 3

    @pytest.mark.asyncio
    async def test_empty_input(self):
        pool = WorkerPool(max_workers=2)

        async def handler(unit):
            return unit

        assert await pool.run([], handler) == []

    @pytest.mark.asyncio
    async def test_statistics(self):
        pool = WorkerPool(max_workers=2, name="test-pool")

        async def handler(unit):
            return unit

        await pool.run(range(3), handler)
        stats = pool.get_statistics()

        assert stats["name"] == "test-pool"
        assert stats["completed_units"] == 3
        assert stats["success_rate"] == 100.0
        assert stats["active"] == 0
