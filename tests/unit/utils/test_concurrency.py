"""Unit tests for cancellation, timeouts and reader/writer locks."""

from __future__ import annotations

import asyncio
import inspect
import threading

import pytest

from agentforge.utils.concurrency import (
    CancellationToken,
    ReadWriteLock,
    ThreadReadWriteLock,
    cancellable_sleep,
    run_with_timeout,
)


async def _value_after(delay: float, value: int = 1) -> int:
    await asyncio.sleep(delay)
    return value


async def test_run_with_timeout_returns_result() -> None:
    assert await run_with_timeout(_value_after(0.001, 7), 1.0) == 7


async def test_run_with_timeout_cancels_slow_work() -> None:
    started = asyncio.Event()
    cancelled = asyncio.Event()

    async def slow() -> int:
        started.set()
        try:
            await asyncio.sleep(5.0)
        except asyncio.CancelledError:
            cancelled.set()
            raise
        return 0

    with pytest.raises(TimeoutError, match="timed out after 0.01 seconds"):
        await run_with_timeout(slow(), 0.01)

    assert started.is_set()
    assert cancelled.is_set()


@pytest.mark.parametrize(
    ("timeout", "pre_cancelled", "expected"),
    [(0, False, ValueError), (1.0, True, asyncio.CancelledError)],
)
async def test_rejected_coroutines_are_closed(
    timeout: float, pre_cancelled: bool, expected: type[BaseException]
) -> None:
    token = CancellationToken()
    if pre_cancelled:
        token.cancel()
    coro = _value_after(0.01)

    with pytest.raises(expected):
        await run_with_timeout(coro, timeout, token)

    assert inspect.getcoroutinestate(coro) == inspect.CORO_CLOSED


async def test_run_with_timeout_stops_when_token_fires() -> None:
    token = CancellationToken()
    asyncio.get_running_loop().call_later(0.01, token.cancel)

    with pytest.raises(asyncio.CancelledError):
        await run_with_timeout(_value_after(5.0), 10.0, token)


async def test_cancellable_sleep_wakes_on_cancel() -> None:
    token = CancellationToken()
    loop = asyncio.get_running_loop()
    loop.call_later(0.01, token.cancel)
    started = loop.time()

    with pytest.raises(asyncio.CancelledError):
        await cancellable_sleep(5.0, token)

    assert loop.time() - started < 1.0


async def test_cancellable_sleep_completes_without_cancel() -> None:
    token = CancellationToken()

    await cancellable_sleep(0.001, token)

    assert not token.is_cancelled


async def test_queued_writer_blocks_new_readers() -> None:
    lock = ReadWriteLock()
    events: list[str] = []

    async def reader(name: str) -> None:
        async with lock.read():
            events.append(f"{name}:start")
            await asyncio.sleep(0.01)
            events.append(f"{name}:end")

    async def writer() -> None:
        async with lock.write():
            assert lock.readers == 0
            events.append("writer")

    first = asyncio.create_task(reader("r1"))
    await asyncio.sleep(0)
    await asyncio.gather(writer(), reader("r2"))
    await first

    assert events.index("writer") > events.index("r1:end")
    assert events.index("writer") < events.index("r2:start")
    assert not lock.writer_active


async def test_abandoned_writer_releases_waiting_readers() -> None:
    lock = ReadWriteLock()
    holding = asyncio.Event()
    release = asyncio.Event()

    async def long_reader() -> None:
        async with lock.read():
            holding.set()
            await release.wait()

    reader_task = asyncio.create_task(long_reader())
    await holding.wait()
    writer_task = asyncio.create_task(lock.write().__aenter__())
    await asyncio.sleep(0)
    writer_task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await writer_task

    async def short_reader() -> str:
        async with lock.read():
            return "read"

    assert await asyncio.wait_for(short_reader(), timeout=1.0) == "read"
    release.set()
    await reader_task


def test_thread_lock_serializes_writers() -> None:
    lock = ThreadReadWriteLock()
    inside = 0
    overlap: list[int] = []
    guard = threading.Lock()

    def work() -> None:
        nonlocal inside
        with lock.write():
            with guard:
                inside += 1
                overlap.append(inside)
            with guard:
                inside -= 1

    threads = [threading.Thread(target=work) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=5.0)

    assert overlap == [1] * 8
    with lock.read(), lock.read():
        pass
