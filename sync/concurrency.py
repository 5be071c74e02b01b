"""Bounded fan-out for per-task and per-project work."""

import asyncio
from typing import Awaitable, Callable, List, Sequence, TypeVar

T = TypeVar("T")
R = TypeVar("R")


async def run_with_concurrency(
    items: Sequence[T],
    limit: int,
    handler: Callable[[T, int], Awaitable[R]],
) -> List[R]:
    """Run ``handler(item, index)`` over ``items`` with at most ``limit`` in flight.

    Results keep the input order. With ``limit`` 1 the items run strictly one
    after another, which is what keeps Premium task order equal to BC order.
    An exception from a handler propagates; handlers that must not abort the
    batch catch their own errors.
    """
    if not items:
        return []
    semaphore = asyncio.Semaphore(max(1, int(limit)))

    async def run(item: T, index: int) -> R:
        async with semaphore:
            return await handler(item, index)

    if limit <= 1:
        return [await handler(item, index) for index, item in enumerate(items)]
    return list(await asyncio.gather(*(run(item, index) for index, item in enumerate(items))))
