"""
agentforge — concurrency helpers

File: src/agentforge/utils/concurrency.py

Purpose
- Reader/writer locks for the job table, the subagent table and the credential
  store, plus the cancellation token that lets ``agentforge wait`` stop early.

Notes
- Both locks prefer writers: once a writer queues, new readers wait, so a
  stream of status reads cannot starve ``delete`` or ``remove``.
"""

from __future__ import annotations

import asyncio
import inspect
import threading
from contextlib import asynccontextmanager, contextmanager, suppress
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Iterator

T = TypeVar("T")


class CancellationToken:
    """One-shot flag; once cancelled, ``wait`` returns and checks raise."""

    __slots__ = ("_fired",)

    def __init__(self) -> None:
        self._fired = asyncio.Event()

    def cancel(self) -> None:
        self._fired.set()

    @property
    def is_cancelled(self) -> bool:
        return self._fired.is_set()

    async def wait(self) -> None:
        await self._fired.wait()

    def raise_if_cancelled(self) -> None:
        if self.is_cancelled:
            raise asyncio.CancelledError("operation cancelled")


class _Occupancy:
    """Who holds or waits for a reader/writer lock. Guarded by the lock's condition."""

    __slots__ = ("readers", "writing", "queued_writers")

    def __init__(self) -> None:
        self.readers = 0
        self.writing = False
        self.queued_writers = 0

    def reader_may_enter(self) -> bool:
        return not self.writing and self.queued_writers == 0

    def writer_may_enter(self) -> bool:
        return not self.writing and self.readers == 0


class ReadWriteLock:
    """``asyncio`` reader/writer lock: any number of readers or a single writer."""

    def __init__(self) -> None:
        self._changed = asyncio.Condition()
        self._state = _Occupancy()

    @property
    def readers(self) -> int:
        return self._state.readers

    @property
    def writer_active(self) -> bool:
        return self._state.writing

    @asynccontextmanager
    async def read(self) -> AsyncIterator[None]:
        async with self._changed:
            await self._changed.wait_for(self._state.reader_may_enter)
            self._state.readers += 1
        try:
            yield
        finally:
            async with self._changed:
                self._state.readers -= 1
                self._changed.notify_all()

    @asynccontextmanager
    async def write(self) -> AsyncIterator[None]:
        async with self._changed:
            self._state.queued_writers += 1
            try:
                await self._changed.wait_for(self._state.writer_may_enter)
            finally:
                self._state.queued_writers -= 1
                # A writer that gave up may have been the only thing blocking readers.
                self._changed.notify_all()
            self._state.writing = True
        try:
            yield
        finally:
            async with self._changed:
                self._state.writing = False
                self._changed.notify_all()


class ThreadReadWriteLock:
    """Same contract as ``ReadWriteLock`` for code that may run off the event loop."""

    def __init__(self) -> None:
        self._changed = threading.Condition(threading.Lock())
        self._state = _Occupancy()

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._changed:
            self._changed.wait_for(self._state.reader_may_enter)
            self._state.readers += 1
        try:
            yield
        finally:
            with self._changed:
                self._state.readers -= 1
                self._changed.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._changed:
            self._state.queued_writers += 1
            try:
                self._changed.wait_for(self._state.writer_may_enter)
            finally:
                self._state.queued_writers -= 1
            self._state.writing = True
        try:
            yield
        finally:
            with self._changed:
                self._state.writing = False
                self._changed.notify_all()


async def run_with_timeout(
    coroutine: Awaitable[T],
    timeout_seconds: float,
    cancel_token: CancellationToken | None = None,
) -> T:
    """Await ``coroutine`` for at most ``timeout_seconds``.

    Raises ``TimeoutError`` on expiry and ``asyncio.CancelledError`` when
    ``cancel_token`` fires first; the work is cancelled in both cases. A
    coroutine rejected up front is closed without being scheduled.
    """

    token = cancel_token if cancel_token is not None else CancellationToken()
    if timeout_seconds <= 0 or token.is_cancelled:
        if inspect.iscoroutine(coroutine):
            coroutine.close()
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        raise asyncio.CancelledError("operation cancelled")

    work = asyncio.ensure_future(coroutine)
    watcher = asyncio.ensure_future(token.wait())
    try:
        done, _ = await asyncio.wait(
            {work, watcher}, timeout=timeout_seconds, return_when=asyncio.FIRST_COMPLETED
        )
        if work in done:
            return work.result()
    finally:
        for pending in (work, watcher):
            if not pending.done():
                pending.cancel()
        with suppress(asyncio.CancelledError):
            await asyncio.gather(work, watcher, return_exceptions=True)
    if token.is_cancelled:
        raise asyncio.CancelledError("operation cancelled")
    raise TimeoutError(f"operation timed out after {timeout_seconds} seconds")


async def cancellable_sleep(seconds: float, cancel_token: CancellationToken | None = None) -> None:
    """``asyncio.sleep`` that raises ``asyncio.CancelledError`` as soon as the token fires."""

    if cancel_token is None:
        await asyncio.sleep(seconds)
        return
    cancel_token.raise_if_cancelled()
    try:
        async with asyncio.timeout(max(seconds, 0.0)):
            await cancel_token.wait()
    except TimeoutError:
        return
    raise asyncio.CancelledError("operation cancelled")


__all__ = [
    "CancellationToken",
    "ReadWriteLock",
    "ThreadReadWriteLock",
    "cancellable_sleep",
    "run_with_timeout",
]
