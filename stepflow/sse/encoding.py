from __future__ import annotations

from typing import AsyncGenerator

from stepflow.protocol import EventEnvelope


def stream_as_sse(event: EventEnvelope) -> dict[str, str]:
    return {
        "event": event.type,
        "id": str(event.seq),
        "data": event.model_dump_json(),
    }


async def sse_events(events: AsyncGenerator[EventEnvelope, None]) -> AsyncGenerator[dict[str, str], None]:
    """Encode run events for EventSourceResponse; closing this closes the run."""
    try:
        async for event in events:
            yield stream_as_sse(event)
    finally:
        await events.aclose()
