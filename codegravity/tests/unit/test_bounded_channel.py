from __future__ import annotations

import asyncio
from typing import AsyncIterator

from codegravity.domain.events import EVENT_COMPLETE, EVENT_DELTA, EVENT_ERROR, StreamDelta
from codegravity.providers.llm.relay import bounded_channel


async def _drain(channel: AsyncIterator[StreamDelta]) -> list[StreamDelta]:
    return [event async for event in channel]


async def test_forwards_events_until_terminal() -> None:
    async def source() -> AsyncIterator[StreamDelta]:
        yield StreamDelta.delta("a")
        yield StreamDelta.delta("b")
        yield StreamDelta.complete()
        yield StreamDelta.delta("never")

    events = await _drain(bounded_channel(source(), idle_timeout_s=1.0, total_timeout_s=5.0))
    assert [(e.kind, e.text) for e in events] == [
        (EVENT_DELTA, "a"),
        (EVENT_DELTA, "b"),
        (EVENT_COMPLETE, ""),
    ]


async def test_source_exhaustion_becomes_complete() -> None:
    async def source() -> AsyncIterator[StreamDelta]:
        yield StreamDelta.delta("a")

    events = await _drain(bounded_channel(source(), idle_timeout_s=1.0, total_timeout_s=5.0))
    assert [e.kind for e in events] == [EVENT_DELTA, EVENT_COMPLETE]


async def test_idle_source_times_out_with_error() -> None:
    async def source() -> AsyncIterator[StreamDelta]:
        yield StreamDelta.delta("a")
        await asyncio.sleep(10)
        yield StreamDelta.delta("late")

    events = await _drain(bounded_channel(source(), idle_timeout_s=0.05, total_timeout_s=5.0))
    assert [e.kind for e in events] == [EVENT_DELTA, EVENT_ERROR]
    assert events[-1].message == "The AI provider stopped sending data."


async def test_total_deadline_bounds_a_trickling_source() -> None:
    async def source() -> AsyncIterator[StreamDelta]:
        while True:
            await asyncio.sleep(0.02)
            yield StreamDelta.delta(".")

    events = await _drain(bounded_channel(source(), idle_timeout_s=1.0, total_timeout_s=0.1))
    assert events[-1].kind == EVENT_ERROR
    assert events[-1].message == "The AI response exceeded the maximum duration."
    assert all(e.kind == EVENT_DELTA for e in events[:-1])


async def test_producer_exception_becomes_error_event() -> None:
    async def source() -> AsyncIterator[StreamDelta]:
        yield StreamDelta.delta("a")
        raise RuntimeError("boom")

    events = await _drain(bounded_channel(source(), idle_timeout_s=1.0, total_timeout_s=5.0))
    assert [e.kind for e in events] == [EVENT_DELTA, EVENT_ERROR]


async def test_closing_consumer_cancels_producer() -> None:
    cancelled = asyncio.Event()

    async def source() -> AsyncIterator[StreamDelta]:
        try:
            yield StreamDelta.delta("a")
            await asyncio.sleep(10)
            yield StreamDelta.delta("b")
        except asyncio.CancelledError:
            cancelled.set()
            raise

    channel = bounded_channel(source(), idle_timeout_s=5.0, total_timeout_s=10.0)
    first = await channel.__anext__()
    assert first.text == "a"
    await channel.aclose()
    await asyncio.wait_for(cancelled.wait(), timeout=1.0)


async def test_slow_consumer_paces_the_producer() -> None:
    produced = 0

    async def source() -> AsyncIterator[StreamDelta]:
        nonlocal produced
        for _ in range(10_000):
            produced += 1
            yield StreamDelta.delta("x")
        yield StreamDelta.complete()

    channel = bounded_channel(source(), idle_timeout_s=5.0, total_timeout_s=10.0)
    first = await channel.__anext__()
    assert first.kind == EVENT_DELTA
    await asyncio.sleep(0.2)
    # One event handed over, one waiting in the slot, one blocked on put.
    assert produced <= 3
    await channel.aclose()


async def test_source_is_closed_after_terminal_event() -> None:
    closed = asyncio.Event()

    async def source() -> AsyncIterator[StreamDelta]:
        try:
            yield StreamDelta.error("upstream said no")
            yield StreamDelta.delta("never")
        finally:
            closed.set()

    events = await _drain(bounded_channel(source(), idle_timeout_s=1.0, total_timeout_s=5.0))
    assert [e.kind for e in events] == [EVENT_ERROR]
    await asyncio.wait_for(closed.wait(), timeout=1.0)
