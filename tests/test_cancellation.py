from __future__ import annotations

import asyncio

import pytest

from vaultpilot.cancellation import Cancelled, CancelToken


def test_raise_if_cancelled():
    token = CancelToken()
    token.raise_if_cancelled()
    token.cancel()
    with pytest.raises(Cancelled):
        token.raise_if_cancelled()


async def test_race_returns_result():
    token = CancelToken()

    async def work():
        return 42

    assert await token.race(work()) == 42


async def test_race_abandons_work_when_cancelled():
    token = CancelToken()
    started = asyncio.Event()
    stopped = []

    async def work():
        started.set()
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            stopped.append(True)
            raise

    racer = asyncio.create_task(token.race(work()))
    await started.wait()
    token.cancel()
    with pytest.raises(Cancelled):
        await racer
    assert stopped == [True]


async def test_race_after_cancel_never_starts_work():
    token = CancelToken()
    token.cancel()
    ran = []

    async def work():
        ran.append(True)

    with pytest.raises(Cancelled):
        await token.race(work())
    assert ran == []
