"""Unit tests for stepflow/agent/merger.py."""
from __future__ import annotations

import asyncio

import pytest

from stepflow.agent.merger import StreamEvent, StreamMerger


# ─── Helpers ──────────────────────────────────────────────────────────────────

async def _source(name: str, count: int, delay: float = 0.0, log: list | None = None):
    try:
        for i in range(count):
            if delay:
                await asyncio.sleep(delay)
            if log is not None:
                log.append((name, i))
            yield StreamEvent(name, {"i": i})
    finally:
        if log is not None:
            log.append((name, "closed"))


async def _failing_source():
    yield StreamEvent("bad", {"i": 0})
    raise RuntimeError("source exploded")


# ─── Ordering ─────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_each_source_keeps_relative_order():
    merger = StreamMerger()
    merger.add_source(_source("A", 3, delay=0.001), name="A")
    merger.add_source(_source("B", 1, delay=0.0015), name="B")

    events = [event async for event in merger]

    assert len(events) == 4
    assert [e.payload["i"] for e in events if e.type == "A"] == [0, 1, 2]
    assert [e.payload["i"] for e in events if e.type == "B"] == [0]


@pytest.mark.asyncio
async def test_source_added_while_running_is_merged():
    merger = StreamMerger()

    async def parent():
        yield StreamEvent("parent", {"i": 0})
        merger.add_source(_source("child", 2), name="child")
        yield StreamEvent("parent", {"i": 1})

    merger.add_source(parent(), name="parent")
    events = [event async for event in merger]

    assert [e.type for e in events].count("child") == 2
    assert [e.payload["i"] for e in events if e.type == "parent"] == [0, 1]


@pytest.mark.asyncio
async def test_empty_merger_ends_immediately():
    assert [event async for event in StreamMerger()] == []


# ─── Backpressure and cancellation ────────────────────────────────────────────

@pytest.mark.asyncio
async def test_bounded_buffer_holds_back_producers():
    log: list = []
    merger = StreamMerger(max_buffer=2)
    merger.add_source(_source("A", 100, log=log), name="A")

    first = await merger.__anext__()
    for _ in range(5):
        await asyncio.sleep(0)

    produced = [entry for entry in log if entry[1] != "closed"]
    assert first.payload["i"] == 0
    # one consumed, two buffered, one blocked on put
    assert len(produced) <= 4
    await merger.aclose()


@pytest.mark.asyncio
async def test_aclose_cancels_and_closes_sources():
    log: list = []
    merger = StreamMerger()
    merger.add_source(_source("A", 1000, delay=0.01, log=log), name="A")
    merger.add_source(_source("B", 1000, delay=0.01, log=log), name="B")

    await merger.__anext__()
    await merger.aclose()

    assert ("A", "closed") in log
    assert ("B", "closed") in log
    with pytest.raises(StopAsyncIteration):
        await merger.__anext__()
    with pytest.raises(RuntimeError):
        merger.add_source(_source("C", 1), name="C")


@pytest.mark.asyncio
async def test_failing_source_surfaces_error_and_cancels_others():
    log: list = []
    merger = StreamMerger()
    merger.add_source(_source("slow", 1000, delay=0.01, log=log), name="slow")
    merger.add_source(_failing_source(), name="bad")

    seen = []
    with pytest.raises(RuntimeError, match="source exploded"):
        async for event in merger:
            seen.append(event.type)

    assert "bad" in seen
    assert ("slow", "closed") in log
