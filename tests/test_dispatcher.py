import asyncio
import time

import pytest

from signal_engine.dispatcher import DispatcherClosed, RequestDispatcher


def make_call(log, name, result=None, exc=None):
    async def call():
        log.append((name, time.monotonic()))
        if exc is not None:
            raise exc
        return result
    return call


@pytest.mark.asyncio
async def test_calls_are_spaced_by_min_interval():
    dispatcher = RequestDispatcher(min_interval=0.05)
    log = []

    await asyncio.gather(*(dispatcher.enqueue(make_call(log, i)) for i in range(4)))

    starts = [t for _, t in log]
    for earlier, later in zip(starts, starts[1:]):
        assert later - earlier >= 0.045


@pytest.mark.asyncio
async def test_calls_run_in_fifo_order():
    dispatcher = RequestDispatcher(min_interval=0.0)
    log = []

    results = await asyncio.gather(*(dispatcher.enqueue(make_call(log, i, result=i * 10)) for i in range(5)))

    assert [name for name, _ in log] == [0, 1, 2, 3, 4]
    assert results == [0, 10, 20, 30, 40]


@pytest.mark.asyncio
async def test_failure_does_not_stop_later_calls():
    dispatcher = RequestDispatcher(min_interval=0.0)
    log = []

    results = await asyncio.gather(
        dispatcher.enqueue(make_call(log, "a", result="ok-a")),
        dispatcher.enqueue(make_call(log, "b", exc=RuntimeError("boom"))),
        dispatcher.enqueue(make_call(log, "c", result="ok-c")),
        return_exceptions=True,
    )

    assert results[0] == "ok-a"
    assert isinstance(results[1], RuntimeError)
    assert results[2] == "ok-c"
    assert [name for name, _ in log] == ["a", "b", "c"]


@pytest.mark.asyncio
async def test_single_drain_task_and_restart_after_idle():
    dispatcher = RequestDispatcher(min_interval=0.0)
    log = []

    assert not dispatcher.is_draining
    await dispatcher.enqueue(make_call(log, "first"))
    await asyncio.sleep(0)
    assert dispatcher.pending == 0

    # queue drained; a new call starts a new drain
    assert await dispatcher.enqueue(make_call(log, "second", result=2)) == 2
    assert dispatcher.last_dispatch is not None


@pytest.mark.asyncio
async def test_time_until_allowed():
    dispatcher = RequestDispatcher(min_interval=0.5)
    assert dispatcher.time_until_allowed() == 0.0

    await dispatcher.enqueue(make_call([], "x"))
    wait = dispatcher.time_until_allowed()
    assert 0.0 < wait <= 0.5


@pytest.mark.asyncio
async def test_close_fails_queued_requests():
    dispatcher = RequestDispatcher(min_interval=1.0)
    log = []

    first = asyncio.ensure_future(dispatcher.enqueue(make_call(log, 1, result="done")))
    second = asyncio.ensure_future(dispatcher.enqueue(make_call(log, 2)))
    third = asyncio.ensure_future(dispatcher.enqueue(make_call(log, 3)))
    await asyncio.sleep(0.05)

    assert await first == "done"
    await dispatcher.close()

    with pytest.raises(DispatcherClosed):
        await second
    with pytest.raises(DispatcherClosed):
        await third
    assert [name for name, _ in log] == [1]
    assert dispatcher.pending == 0


def test_negative_interval_rejected():
    with pytest.raises(ValueError):
        RequestDispatcher(min_interval=-1)
