"""
agentforge — progress event bus

File: src/agentforge/observability/events.py

Purpose
- In-process notification transport for ``ProgressEvent`` values published by
  the compilation orchestrator. The CLI subscribes to render progress bars.

Behavior
- Subscriptions filter by ``job_id``; ``None`` receives every event.
- A subscriber that raises is recorded as a ``DeliveryFailure`` and never stops
  delivery to the others or fails the publisher.
- Coroutine subscribers are scheduled on the running loop by ``publish`` (see
  ``drain_async``) and awaited in order by ``publish_async``.
- The last ``buffer_size`` events are kept for ``replay``.
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
import threading
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Final, Protocol, runtime_checkable

import structlog

from agentforge.domain.events import ProgressEvent

Subscriber = Callable[[ProgressEvent], object]

FAILURE_HISTORY: Final[int] = 1024


@runtime_checkable
class ProgressPublisher(Protocol):
    def publish(self, event: ProgressEvent) -> object: ...


@dataclass(frozen=True, slots=True)
class DeliveryFailure:
    event_id: str
    job_id: str
    target: str
    error_type: str
    message: str

    @classmethod
    def capture(
        cls, event: ProgressEvent, callback: object, exc: BaseException
    ) -> DeliveryFailure:
        target = getattr(callback, "__name__", None) or type(callback).__name__
        return cls(
            event_id=event.event_id,
            job_id=event.job_id,
            target=str(target),
            error_type=type(exc).__name__,
            message=str(exc),
        )


class EventBus:
    """Thread-safe fan-out of progress events to job-scoped subscribers."""

    def __init__(self, *, buffer_size: int = 512, logger: Any | None = None) -> None:
        if isinstance(buffer_size, bool) or not isinstance(buffer_size, int):
            raise ValueError(f"buffer_size must be an integer, got {type(buffer_size).__name__}")
        if buffer_size <= 0:
            raise ValueError("buffer_size must be > 0")
        self._history: deque[ProgressEvent] = deque(maxlen=buffer_size)
        self._failures: deque[DeliveryFailure] = deque(maxlen=FAILURE_HISTORY)
        self._subscribers: dict[int, tuple[str | None, Subscriber]] = {}
        self._tokens = itertools.count(1)
        self._scheduled: set[asyncio.Task[object]] = set()
        self._lock = threading.RLock()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def subscribe(self, job_id: str | None, callback: Subscriber) -> int:
        if not callable(callback):
            raise ValueError("callback must be callable")
        with self._lock:
            token = next(self._tokens)
            self._subscribers[token] = (job_id, callback)
        return token

    def unsubscribe(self, token: int) -> bool:
        with self._lock:
            return self._subscribers.pop(token, None) is not None

    def publish(self, event: ProgressEvent) -> tuple[DeliveryFailure, ...]:
        """Deliver from synchronous code. Coroutine results are scheduled, not awaited."""

        try:
            loop: asyncio.AbstractEventLoop | None = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        failures: list[DeliveryFailure] = []
        for callback in self._targets(event):
            try:
                outcome = callback(event)
                if inspect.isawaitable(outcome):
                    self._schedule(outcome, loop, event, callback)
            except Exception as exc:  # noqa: BLE001 - subscribers are isolated
                failures.append(DeliveryFailure.capture(event, callback, exc))
        return self._record_failures(failures)

    async def publish_async(self, event: ProgressEvent) -> tuple[DeliveryFailure, ...]:
        """Deliver from async code, awaiting each subscriber before the next."""

        failures: list[DeliveryFailure] = []
        for callback in self._targets(event):
            try:
                outcome = callback(event)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as exc:  # noqa: BLE001 - subscribers are isolated
                failures.append(DeliveryFailure.capture(event, callback, exc))
        return self._record_failures(failures)

    async def drain_async(self) -> tuple[DeliveryFailure, ...]:
        """Wait for coroutine subscribers scheduled by ``publish``."""

        with self._lock:
            pending = list(self._scheduled)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        return self.dispatch_errors()

    def replay(
        self,
        *,
        job_id: str | None = None,
        since: datetime | None = None,
        limit: int | None = None,
    ) -> tuple[ProgressEvent, ...]:
        if since is not None:
            if since.tzinfo is None:
                raise ValueError("since datetime must be timezone-aware")
            since = since.astimezone(UTC)
        if limit is not None and limit <= 0:
            return ()
        with self._lock:
            history = list(self._history)
        selected = [
            event
            for event in history
            if (job_id is None or event.job_id == job_id)
            and (since is None or event.timestamp > since)
        ]
        return tuple(selected if limit is None else selected[-limit:])

    def dispatch_errors(self) -> tuple[DeliveryFailure, ...]:
        with self._lock:
            return tuple(self._failures)

    def _targets(self, event: ProgressEvent) -> list[Subscriber]:
        if not isinstance(event, ProgressEvent):
            raise ValueError(f"event must be ProgressEvent, got {type(event).__name__}")
        with self._lock:
            self._history.append(event)
            return [
                callback
                for job_id, callback in self._subscribers.values()
                if job_id is None or job_id == event.job_id
            ]

    def _schedule(
        self,
        awaitable: Awaitable[object],
        loop: asyncio.AbstractEventLoop | None,
        event: ProgressEvent,
        callback: Subscriber,
    ) -> None:
        if loop is None:
            asyncio.run(_awaited(awaitable))
            return
        task = loop.create_task(_awaited(awaitable))
        with self._lock:
            self._scheduled.add(task)

        def finished(done: asyncio.Task[object]) -> None:
            with self._lock:
                self._scheduled.discard(done)
            exc = None if done.cancelled() else done.exception()
            if isinstance(exc, Exception):
                self._record_failures([DeliveryFailure.capture(event, callback, exc)])

        task.add_done_callback(finished)

    def _record_failures(self, failures: list[DeliveryFailure]) -> tuple[DeliveryFailure, ...]:
        if failures:
            with self._lock:
                self._failures.extend(failures)
            for failure in failures:
                self._logger.warning(
                    "progress_subscriber_failed",
                    job_id=failure.job_id,
                    target=failure.target,
                    error_type=failure.error_type,
                )
        return tuple(failures)


async def _awaited(awaitable: Awaitable[object]) -> object:
    return await awaitable


__all__ = ["DeliveryFailure", "EventBus", "ProgressPublisher", "Subscriber"]
