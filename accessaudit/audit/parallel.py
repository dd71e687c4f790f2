# accessaudit/audit/parallel.py
import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, List, Optional, Sequence, TypeVar, Union

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

Worker = Callable[[T, int], Union[R, Awaitable[R]]]


async def run_bounded(
    items: Sequence[T],
    worker: Worker,
    concurrency: int = 5,
) -> List[Optional[R]]:
    """
    Run worker(item, index) over items with at most `concurrency` in flight.

    Results come back in input order. A worker that raises is logged and its
    slot is left as None; the other items keep going. Sync and async workers
    are both accepted.
    """
    n = len(items)
    results: List[Optional[R]] = [None] * n
    if n == 0:
        return results

    next_index = 0

    async def _drain() -> None:
        nonlocal next_index
        while next_index < n:
            index = next_index
            next_index += 1
            try:
                res = worker(items[index], index)
                if inspect.isawaitable(res):
                    res = await res
                results[index] = res
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Error processing item %d", index)
                results[index] = None

    lanes = min(max(1, int(concurrency or 1)), n)
    await asyncio.gather(*(_drain() for _ in range(lanes)))
    return results
