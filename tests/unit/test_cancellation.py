"""Unit tests for cooperative cancellation."""

import asyncio

import pytest

from cellforge.core.cancellation import CancellationToken, iterate_cancellable, run_cancellable
from cellforge.core.exceptions import GenerationCancelledError

pytestmark = pytest.mark.unit


@pytest.mark.asyncio
async def test_cancel_is_idempotent_and_keeps_first_reason():
    token = CancellationToken()
    token.cancel("client disconnected")
    token.cancel("second")

    assert token.cancelled
    assert token.reason == "client disconnected"
    with pytest.raises(GenerationCancelledError):
        token.raise_if_cancelled()


@pytest.mark.asyncio
async def test_run_cancellable_returns_result():
    async def work():
        await asyncio.sleep(0)
        return 42

    assert await run_cancellable(work(), CancellationToken()) == 42
    assert await run_cancellable(work(), None) == 42


@pytest.mark.asyncio
async def test_run_cancellable_aborts_pending_work():
    finished = []

    async def slow():
        await asyncio.sleep(5)
        finished.append(True)

    token = CancellationToken()
    asyncio.get_running_loop().call_later(0.02, token.cancel)

    with pytest.raises(GenerationCancelledError):
        await run_cancellable(slow(), token)
    assert finished == []


@pytest.mark.asyncio
async def test_already_cancelled_token_fails_fast():
    token = CancellationToken()
    token.cancel()

    async def never():
        raise AssertionError("should not run")

    coro = never()
    with pytest.raises(GenerationCancelledError):
        await run_cancellable(coro, token)
    coro.close()


@pytest.mark.asyncio
async def test_iterate_cancellable_closes_source():
    closed = []

    async def source():
        try:
            for i in range(100):
                yield i
                await asyncio.sleep(0.01)
        finally:
            closed.append(True)

    token = CancellationToken()
    seen = []
    with pytest.raises(GenerationCancelledError):
        async for item in iterate_cancellable(source(), token):
            seen.append(item)
            if item == 2:
                token.cancel()

    assert seen == [0, 1, 2]
    assert closed == [True]
