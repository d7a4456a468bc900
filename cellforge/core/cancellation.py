"""
Cooperative Cancellation
========================

A single ``CancellationToken`` is shared by a generation run: the scheduler
checks it before dispatching a row and provider adapters race their HTTP
calls against it, so a cancelled run stops new work and aborts calls that
are still waiting on the network.

Transport glue (``watch_disconnect``, ``with_cancellation``) trips the token
when the HTTP client goes away.
"""

import asyncio
import logging
from collections.abc import AsyncGenerator, AsyncIterator, Awaitable
from contextlib import suppress
from typing import TypeVar

from fastapi import Request

from cellforge.core.exceptions import GenerationCancelledError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancellationToken:
    """
    Token for cooperative cancellation in long-running operations.

    Usage:
        token = CancellationToken()

        for row in rows:
            if token.cancelled:
                break
            # do work
    """

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        """Request cancellation. Idempotent; the first reason wins."""
        if not self._event.is_set():
            self.reason = reason
            logger.info(f"[Cancellation] Token cancelled: {reason}")
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise GenerationCancelledError()


async def run_cancellable(awaitable: Awaitable[T], token: CancellationToken | None) -> T:
    """
    Await ``awaitable`` unless ``token`` fires first.

    When the token wins, the underlying task is cancelled (aborting any HTTP
    request it owns) and ``GenerationCancelledError`` is raised.
    """
    if token is None:
        return await awaitable
    if token.cancelled:
        close = getattr(awaitable, "close", None)
        if close is not None:
            close()
        raise GenerationCancelledError()

    task = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(token.wait())
    try:
        done, _ = await asyncio.wait(
            {task, waiter}, return_when=asyncio.FIRST_COMPLETED
        )
    except asyncio.CancelledError:
        task.cancel()
        waiter.cancel()
        raise

    if task in done:
        waiter.cancel()
        return task.result()

    task.cancel()
    with suppress(asyncio.CancelledError):
        await task
    raise GenerationCancelledError()


async def iterate_cancellable(
    iterator: AsyncIterator[T], token: CancellationToken | None
) -> AsyncGenerator[T, None]:
    """Yield from ``iterator``, racing each item against ``token``."""
    try:
        while True:
            try:
                item = await run_cancellable(iterator.__anext__(), token)
            except StopAsyncIteration:
                return
            yield item
    finally:
        aclose = getattr(iterator, "aclose", None)
        if aclose is not None:
            await aclose()


async def watch_disconnect(
    request: Request, token: CancellationToken, check_interval: float = 0.5
) -> None:
    """Poll the client connection and cancel ``token`` once it drops."""
    while not token.cancelled:
        if await request.is_disconnected():
            logger.info(f"Client disconnected: {request.method} {request.url.path}")
            token.cancel("client disconnected")
            return
        await asyncio.sleep(check_interval)


async def with_cancellation(
    request: Request,
    generator: AsyncGenerator[T, None],
    token: CancellationToken,
    check_interval: float = 0.5,
) -> AsyncGenerator[T, None]:
    """
    Wrap an async generator with client disconnect detection.

    A watcher task cancels ``token`` when the client disconnects; the wrapped
    generator is then drained to let in-flight cells persist their final state.
    """
    watcher = asyncio.create_task(watch_disconnect(request, token, check_interval))
    try:
        async for item in generator:
            yield item
    except asyncio.CancelledError:
        logger.info(f"Request cancelled: {request.url.path}")
        token.cancel("request task cancelled")
        raise
    finally:
        watcher.cancel()
        with suppress(asyncio.CancelledError):
            await watcher
        await generator.aclose()


__all__ = [
    "CancellationToken",
    "run_cancellable",
    "iterate_cancellable",
    "watch_disconnect",
    "with_cancellation",
]
