import asyncio

import pytest

from accessaudit.audit.parallel import run_bounded

pytestmark = pytest.mark.anyio


async def test_results_keep_input_order():
    async def worker(item, index):
        await asyncio.sleep(0.01 * (5 - index))
        return item * 10

    assert await run_bounded([1, 2, 3, 4, 5], worker, concurrency=3) == [10, 20, 30, 40, 50]


async def test_concurrency_limit_is_respected():
    in_flight = 0
    peak = 0

    async def worker(item, index):
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.01)
        in_flight -= 1
        return item

    await run_bounded(list(range(10)), worker, concurrency=3)
    assert peak == 3


async def test_failing_item_leaves_none_and_others_finish():
    async def worker(item, index):
        if item == "bad":
            raise RuntimeError("boom")
        return item.upper()

    assert await run_bounded(["a", "bad", "c"], worker, concurrency=2) == ["A", None, "C"]


async def test_sync_worker_and_empty_input():
    assert await run_bounded([1, 2], lambda item, index: item + index) == [1, 3]
    assert await run_bounded([], lambda item, index: item) == []
