import asyncio
import random

import pytest

from scrape_gateway.concurrency import delay, map_with_concurrency


class InFlightCounter:
    def __init__(self):
        self.current = 0
        self.peak = 0

    def enter(self):
        self.current += 1
        self.peak = max(self.peak, self.current)

    def leave(self):
        self.current -= 1


@pytest.mark.asyncio
async def test_results_keep_input_order_with_random_delays():
    rng = random.Random(7)
    items = list(range(20))

    async def worker(item, index):
        await asyncio.sleep(rng.uniform(0, 0.01))
        return item * 10

    results = await map_with_concurrency(items, 4, worker)
    assert results == [i * 10 for i in items]


@pytest.mark.asyncio
async def test_never_exceeds_concurrency_limit():
    counter = InFlightCounter()

    async def worker(item, index):
        counter.enter()
        await asyncio.sleep(0.005)
        counter.leave()
        return item

    results = await map_with_concurrency(list(range(12)), 3, worker)
    assert results == list(range(12))
    assert counter.peak == 3


@pytest.mark.asyncio
async def test_one_failure_does_not_abort_siblings():
    async def worker(item, index):
        if index == 2:
            raise RuntimeError("boom")
        return f"r{item}"

    results = await map_with_concurrency(["a", "b", "c", "d"], 2, worker)
    assert results == ["ra", "rb", None, "rd"]


@pytest.mark.asyncio
async def test_five_items_limit_two_with_failing_third():
    counter = InFlightCounter()

    async def worker(item, index):
        counter.enter()
        try:
            await asyncio.sleep(0.005)
            if item == 3:
                raise ValueError("item 3 failed")
            return f"r{item}"
        finally:
            counter.leave()

    results = await map_with_concurrency([1, 2, 3, 4, 5], 2, worker)
    assert results == ["r1", "r2", None, "r4", "r5"]
    assert counter.peak <= 2


@pytest.mark.asyncio
async def test_empty_input_returns_empty_list():
    async def worker(item, index):
        raise AssertionError("worker must not be called")

    assert await map_with_concurrency([], 3, worker) == []


@pytest.mark.asyncio
async def test_limit_above_item_count_runs_everything_at_once():
    counter = InFlightCounter()

    async def worker(item, index):
        counter.enter()
        await asyncio.sleep(0.005)
        counter.leave()
        return index

    results = await map_with_concurrency(["x", "y", "z"], 10, worker)
    assert results == [0, 1, 2]
    assert counter.peak == 3


@pytest.mark.asyncio
async def test_invalid_limit_rejected():
    async def worker(item, index):
        return item

    with pytest.raises(ValueError):
        await map_with_concurrency([1], 0, worker)


@pytest.mark.asyncio
async def test_delay_zero_returns_immediately():
    await delay(0)
    await delay(-1)
