"""Fan-in of concurrently running event sources into one pull-based stream."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

logger = logging.getLogger(__name__)

_ITEM = "item"
_FAILED = "failed"
_IDLE = "idle"


@dataclass(slots=True)
class StreamEvent:
    type: str
    payload: dict[str, Any] = field(default_factory=dict)


class StreamMerger:
    """Merge N async sources; each source keeps its own order, sources interleave by arrival.

    The buffer is bounded: when the consumer stops pulling, every source blocks
    on its next hand-off instead of buffering. ``aclose`` cancels all sources.
    A source that raises ends the merge and the error surfaces to the consumer.
    """

    def __init__(self, *, max_buffer: int = 64) -> None:
        self._queue: asyncio.Queue[tuple[str, Any]] = asyncio.Queue(maxsize=max_buffer)
        self._tasks: set[asyncio.Task[None]] = set()
        self._active = 0
        self._finished = False

    @property
    def active_sources(self) -> int:
        return self._active

    def add_source(self, source: AsyncIterator[StreamEvent], *, name: str = "source") -> None:
        if self._finished:
            raise RuntimeError("merger is closed")
        self._active += 1
        task = asyncio.create_task(self._pump(source), name=f"merger:{name}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _pump(self, source: AsyncIterator[StreamEvent]) -> None:
        try:
            async for item in source:
                await self._queue.put((_ITEM, item))
        except Exception as exc:  # noqa: BLE001
            await self._queue.put((_FAILED, exc))
            return
        finally:
            aclose = getattr(source, "aclose", None)
            if aclose is not None:
                await aclose()
        self._active -= 1
        if self._active == 0:
            await self._queue.put((_IDLE, None))

    def __aiter__(self) -> StreamMerger:
        return self

    async def __anext__(self) -> StreamEvent:
        if self._finished or (self._active == 0 and self._queue.empty()):
            self._finished = True
            raise StopAsyncIteration
        kind, value = await self._queue.get()
        if kind == _IDLE:
            self._finished = True
            raise StopAsyncIteration
        if kind == _FAILED:
            await self.aclose()
            raise value
        return value

    async def aclose(self) -> None:
        self._finished = True
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.debug("merger closed, cancelled %d source(s)", len(tasks))
        self._tasks.clear()
        while not self._queue.empty():
            self._queue.get_nowait()
