"""Signal delivery."""

import asyncio
import logging

import pytest

from pan_agent.emitter import EventEmitter

from conftest import settle


@pytest.mark.asyncio
async def test_handlers_run_after_emit_in_order():
    emitter = EventEmitter()
    seen = []
    emitter.on("x", lambda v: seen.append(("first", v)))
    emitter.on("x", lambda v: seen.append(("second", v)))
    assert emitter.emit("x", 1) == 2
    emitter.emit("x", 2)
    assert seen == []
    await settle()
    assert seen == [("first", 1), ("second", 1), ("first", 2), ("second", 2)]


@pytest.mark.asyncio
async def test_once_and_off():
    emitter = EventEmitter()
    seen = []
    emitter.once("x", seen.append)
    remove = emitter.on("x", lambda v: seen.append(-v))
    emitter.emit("x", 1)
    remove()
    emitter.emit("x", 2)
    await settle()
    assert seen == [1, -1]
    assert emitter.listener_count("x") == 0
    assert emitter.emit("x", 3) == 0


@pytest.mark.asyncio
async def test_failing_handler_does_not_block_others(caplog):
    emitter = EventEmitter()
    seen = []

    def broken(_):
        raise RuntimeError("boom")

    emitter.on("x", broken)
    emitter.on("x", seen.append)
    with caplog.at_level(logging.ERROR, logger="pan_agent.emitter"):
        emitter.emit("x", "ok")
        await settle()
    assert seen == ["ok"]
    assert "boom" in caplog.text


@pytest.mark.asyncio
async def test_coroutine_handlers_are_awaited():
    emitter = EventEmitter()
    seen = []

    async def handler(value):
        await asyncio.sleep(0)
        seen.append(value)

    emitter.on("x", handler)
    emitter.emit("x", "async")
    await settle()
    assert seen == ["async"]


@pytest.mark.asyncio
async def test_wait_for():
    emitter = EventEmitter()
    waiter = asyncio.ensure_future(emitter.wait_for(["a", "b"], timeout=1, match=lambda v: v > 1))
    await asyncio.sleep(0)
    emitter.emit("a", 1)
    emitter.emit("b", 2)
    assert await waiter == ("b", 2)

    with pytest.raises(asyncio.TimeoutError):
        await emitter.wait_for("a", timeout=0.01)
