"""Bounded asyncio task pool used to fan a scan out over its universe."""
from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Iterable, List, Optional, TypeVar

from .errors import ValidationError

T = TypeVar("T")


class BoundedTaskPool:
    """
    Run ``handler`` over ``items`` with at most ``size`` handlers in flight.

    Items are queued FIFO and drained by ``size`` workers; :meth:`run`
    returns once every item has been handled.  Non-``None`` handler results
    are collected in completion order.  An exception escaping a handler
    cancels the remaining workers and is re-raised, so handlers are expected
    to contain their own per-item failures.
    """

    def __init__(self, size: int) -> None:
        if isinstance(size, bool) or not isinstance(size, int) or size <= 0:
            raise ValidationError(f"pool size must be a positive integer, got {size!r}")
        self.size = size
        self.in_flight = 0
        self.peak_in_flight = 0

    async def run(self, items: Iterable[T], handler: Callable[[T], Awaitable[Optional[Any]]]) -> List[Any]:
        queue: asyncio.Queue = asyncio.Queue()
        for item in items:
            queue.put_nowait(item)
        results: List[Any] = []

        async def worker() -> None:
            while True:
                try:
                    item = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                self.in_flight += 1
                self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
                try:
                    result = await handler(item)
                finally:
                    self.in_flight -= 1
                    queue.task_done()
                if result is not None:
                    results.append(result)

        workers = [asyncio.ensure_future(worker()) for _ in range(min(self.size, queue.qsize()))]
        try:
            await asyncio.gather(*workers)
        except BaseException:
            for w in workers:
                w.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            raise
        return results
