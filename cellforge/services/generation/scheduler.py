"""
Batch Scheduler
===============

Runs one async worker per row with a sliding window of at most N in flight.

- As soon as any worker finishes, its slot is freed and the next row is
  dispatched; slots never wait for a whole batch to drain.
- Events are yielded in completion order, not row order.
- The cancellation token is checked before every dispatch. Workers receive
  the same token and pass it down to provider calls.
- Finished tasks are dropped immediately so long runs do not accumulate
  results.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Callable, Iterable
from contextlib import suppress
from typing import Any, Protocol

from cellforge.core.cancellation import CancellationToken

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 5
MAX_CONCURRENCY = 10


class SchedulerEvent(Protocol):
    done: bool


Worker = Callable[[int], AsyncIterator[Any]]

_FINISHED = object()


class BatchScheduler:
    """Sliding-window executor for per-row async workers."""

    def __init__(
        self,
        concurrency: int = DEFAULT_CONCURRENCY,
        max_concurrency: int = MAX_CONCURRENCY,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        if concurrency > max_concurrency:
            logger.warning(
                f"[Scheduler] Concurrency {concurrency} above cap {max_concurrency}, clamping"
            )
            concurrency = max_concurrency
        self.concurrency = concurrency

        self.in_flight = 0
        self.peak_in_flight = 0
        self.dispatched = 0
        self.completed = 0

    async def run(
        self,
        rows: Iterable[int],
        worker: Worker,
        cancel_token: CancellationToken | None = None,
        stream: bool = False,
    ) -> AsyncIterator[Any]:
        """
        Dispatch ``worker(row)`` for every row and yield its events.

        Args:
            rows: Row indices, dispatched in order
            worker: Returns an async iterator of events with a ``done`` flag
            cancel_token: Stops further dispatch once cancelled
            stream: Also yield non-terminal events
        """
        token = cancel_token or CancellationToken()
        pending = iter(rows)
        queue: asyncio.Queue = asyncio.Queue()
        tasks: dict[int, asyncio.Task] = {}

        async def _drain(row: int) -> None:
            try:
                async for event in worker(row):
                    if stream or getattr(event, "done", True):
                        await queue.put(event)
            except Exception:
                logger.exception(f"[Scheduler] Worker for row {row} failed")
            finally:
                await queue.put((_FINISHED, row))

        def _dispatch_next() -> bool:
            if token.cancelled:
                return False
            row = next(pending, None)
            if row is None:
                return False
            tasks[row] = asyncio.create_task(_drain(row), name=f"generate-row-{row}")
            self.dispatched += 1
            self.in_flight += 1
            self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
            return True

        while self.in_flight < self.concurrency and _dispatch_next():
            pass

        try:
            while tasks:
                item = await queue.get()
                if isinstance(item, tuple) and item and item[0] is _FINISHED:
                    row = item[1]
                    task = tasks.pop(row, None)
                    if task is not None:
                        await task
                    self.in_flight -= 1
                    self.completed += 1
                    _dispatch_next()
                    continue
                yield item
        finally:
            if tasks:
                # Consumer stopped early: stop dispatching and let in-flight
                # workers reach their terminal state
                token.cancel("consumer stopped")
                for task in list(tasks.values()):
                    with suppress(asyncio.CancelledError):
                        await task
                    self.completed += 1
                tasks.clear()
                self.in_flight = 0
            if token.cancelled:
                logger.info(
                    f"[Scheduler] Cancelled after {self.completed}/{self.dispatched} rows"
                )
