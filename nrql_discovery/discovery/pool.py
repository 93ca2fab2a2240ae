"""Fixed-size worker pool for fanning discovery work out concurrently."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable
import logging

from nrql_discovery.core.types import Failure, Result, Success

logger = logging.getLogger(__name__)


async def run_pool[T, R](
    items: Iterable[T],
    worker: Callable[[T], Awaitable[R]],
    *,
    concurrency: int,
    on_done: Callable[[T, Result[R]], Awaitable[None] | None] | None = None,
) -> list[Result[R]]:
    """Run ``worker`` over ``items`` with at most ``concurrency`` in flight.

    Returns one ``Success``/``Failure`` per item, in input order. Exceptions
    from ``worker`` become ``Failure`` values; cancellation propagates and
    stops the remaining workers. ``on_done`` is called as each item finishes,
    so callers can merge results in completion order.
    """
    if concurrency < 1:
        raise ValueError("concurrency must be >= 1")

    pending = list(items)
    results: list[Result[R] | None] = [None] * len(pending)
    queue: asyncio.Queue[tuple[int, T]] = asyncio.Queue()
    for index, item in enumerate(pending):
        queue.put_nowait((index, item))

    async def _drain() -> None:
        while True:
            try:
                index, item = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            try:
                outcome: Result[R] = Success(await worker(item))
            except Exception as e:
                logger.debug("Pool worker failed for %r: %s", item, e)
                outcome = Failure(e)
            results[index] = outcome
            if on_done is not None:
                maybe = on_done(item, outcome)
                if maybe is not None:
                    await maybe

    workers = min(concurrency, len(pending))
    if workers:
        async with asyncio.TaskGroup() as tg:
            for _ in range(workers):
                tg.create_task(_drain())
    return [r for r in results if r is not None]
