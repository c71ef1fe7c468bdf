import asyncio

import pytest

from simsync.domain.cancellation import CancellationToken
from simsync.errors import OperationCancelled


async def _value(value):
    return value

@pytest.mark.asyncio
async def test_guard_returns_result():
    token = CancellationToken()
    assert await token.guard(_value(7)) == 7
    assert not token.cancelled

@pytest.mark.asyncio
async def test_guard_fails_fast_once_cancelled():
    token = CancellationToken()
    token.cancel()
    coroutine = _value(7)
    with pytest.raises(OperationCancelled):
        await token.guard(coroutine)
    assert coroutine.cr_frame is None

@pytest.mark.asyncio
async def test_cancel_aborts_in_flight_work():
    token = CancellationToken()
    started = asyncio.Event()

    async def slow():
        started.set()
        await asyncio.sleep(10)

    task = asyncio.create_task(token.guard(slow()))
    await started.wait()
    token.cancel()

    with pytest.raises(OperationCancelled):
        await task
    assert token.cancelled

@pytest.mark.asyncio
async def test_outer_cancellation_is_not_translated():
    token = CancellationToken()
    started = asyncio.Event()

    async def slow():
        started.set()
        await asyncio.sleep(10)

    task = asyncio.create_task(token.guard(slow()))
    await started.wait()
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert not token.cancelled

@pytest.mark.asyncio
async def test_raise_if_cancelled():
    token = CancellationToken()
    token.raise_if_cancelled()
    token.cancel()
    with pytest.raises(OperationCancelled):
        token.raise_if_cancelled()
