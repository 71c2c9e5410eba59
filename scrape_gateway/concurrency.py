"""Bounded-concurrency fan-out with per-item failure isolation"""

import asyncio
from typing import Awaitable, Callable, List, Optional, Sequence, TypeVar

from loguru import logger

T = TypeVar("T")
R = TypeVar("R")


async def map_with_concurrency(
    items: Sequence[T],
    limit: int,
    worker: Callable[[T, int], Awaitable[R]],
) -> List[Optional[R]]:
    """
    Run ``worker(item, index)`` over ``items`` with at most ``limit`` calls in flight.

    Results keep the input order. A worker that raises leaves ``None`` in its
    slot; the other workers keep running.

    Args:
        items: Inputs to process
        limit: Maximum number of concurrent worker invocations (>= 1)
        worker: Async callable receiving the item and its index

    Returns:
        List of the same length as ``items``
    """
    if limit < 1:
        raise ValueError(f"Concurrency limit must be >= 1, got {limit}")

    results: List[Optional[R]] = [None] * len(items)
    if not items:
        return results

    semaphore = asyncio.Semaphore(limit)

    async def run_one(index: int, item: T) -> None:
        async with semaphore:
            try:
                results[index] = await worker(item, index)
            except Exception as e:
                results[index] = None
                logger.warning(f"⚠️ Worker {index} error: {e}")

    await asyncio.gather(*(run_one(i, item) for i, item in enumerate(items)))
    return results


async def delay(seconds: float) -> None:
    """Sleep without blocking the event loop"""
    if seconds > 0:
        await asyncio.sleep(seconds)
