"""Unit tests for the in-process progress event bus."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from agentforge.domain.events import ProgressEvent, ProgressStep
from agentforge.observability.events import EventBus

JOB_A = "compile-1700000000000-aaaaaaaaa"
JOB_B = "compile-1700000000000-bbbbbbbbb"


def _event(job_id: str = JOB_A, progress: int = 10) -> ProgressEvent:
    return ProgressEvent(
        job_id=job_id, step=ProgressStep.CONFIGURATION, progress=progress, message="m"
    )


def test_subscribers_filter_by_job() -> None:
    bus = EventBus()
    seen_a: list[int] = []
    seen_all: list[str] = []
    bus.subscribe(JOB_A, lambda event: seen_a.append(event.progress))
    bus.subscribe(None, lambda event: seen_all.append(event.job_id))

    bus.publish(_event(JOB_A, 10))
    bus.publish(_event(JOB_B, 20))

    assert seen_a == [10]
    assert seen_all == [JOB_A, JOB_B]


def test_failing_subscriber_does_not_block_others() -> None:
    bus = EventBus()
    seen: list[int] = []

    def broken(event: ProgressEvent) -> None:
        raise RuntimeError("socket closed")

    bus.subscribe(None, broken)
    bus.subscribe(None, lambda event: seen.append(event.progress))

    errors = bus.publish(_event())

    assert seen == [10]
    assert [(item.target, item.error_type) for item in errors] == [("broken", "RuntimeError")]
    assert bus.dispatch_errors() == errors


def test_unsubscribe_stops_delivery() -> None:
    bus = EventBus()
    seen: list[int] = []
    token = bus.subscribe(None, lambda event: seen.append(event.progress))

    assert bus.unsubscribe(token) is True
    assert bus.unsubscribe(token) is False
    bus.publish(_event())

    assert seen == []


async def test_async_subscribers_are_scheduled_and_drained() -> None:
    bus = EventBus()
    seen: list[int] = []

    async def on_event(event: ProgressEvent) -> None:
        await asyncio.sleep(0)
        seen.append(event.progress)

    bus.subscribe(None, on_event)
    bus.publish(_event(progress=30))
    await bus.drain_async()

    assert seen == [30]


async def test_publish_async_awaits_subscribers_in_order() -> None:
    bus = EventBus()
    seen: list[str] = []

    async def first(event: ProgressEvent) -> None:
        await asyncio.sleep(0.001)
        seen.append("first")

    bus.subscribe(None, first)
    bus.subscribe(None, lambda event: seen.append("second"))

    errors = await bus.publish_async(_event())

    assert errors == ()
    assert seen == ["first", "second"]


def test_replay_filters_and_limits() -> None:
    bus = EventBus(buffer_size=3)
    for progress in (10, 20, 30, 40):
        bus.publish(_event(JOB_A, progress))
    bus.publish(_event(JOB_B, 50))

    assert [item.progress for item in bus.replay()] == [30, 40, 50]
    assert [item.progress for item in bus.replay(job_id=JOB_A, limit=1)] == [40]
    assert bus.replay(limit=0) == ()
    future = datetime.now(tz=UTC) + timedelta(hours=1)
    assert bus.replay(since=future) == ()


def test_replay_requires_aware_since() -> None:
    with pytest.raises(ValueError, match="timezone-aware"):
        EventBus().replay(since=datetime(2026, 1, 1))  # noqa: DTZ001


def test_buffer_size_must_be_positive() -> None:
    with pytest.raises(ValueError, match="buffer_size must be > 0"):
        EventBus(buffer_size=0)
