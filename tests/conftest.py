from __future__ import annotations

import asyncio
import copy
from typing import Any

import pytest

from stepflow.agent.messages import Message, TextPart
from stepflow.agent.providers.base import (
    ChatRequest,
    FinishEvent,
    ModelAdapter,
    TextDelta,
    ToolCallRequest,
)
from stepflow.agent.tool_registry import ToolDefinition, ToolRegistry


class ScriptedAdapter(ModelAdapter):
    """Adapter that replays one preset event list (or exception) per step."""

    def __init__(self, steps: list[list[Any] | Exception]) -> None:
        self._steps = list(steps)
        self.requests: list[ChatRequest] = []
        self.closed = 0

    async def stream(self, request: ChatRequest):
        self.requests.append(request)
        script = self._steps[min(len(self.requests), len(self._steps)) - 1]
        try:
            if isinstance(script, Exception):
                raise script
            for event in script:
                if isinstance(event, Exception):
                    raise event
                if isinstance(event, float):
                    await asyncio.sleep(event)
                    continue
                yield copy.copy(event)
        finally:
            self.closed += 1


def text_step(text: str = "Done.") -> list[Any]:
    return [TextDelta(text=text), FinishEvent(finish_reason="stop")]


def tool_step(*calls: tuple[str, str, Any]) -> list[Any]:
    events: list[Any] = [
        ToolCallRequest(invocation_id=call_id, tool_name=name, input=args)
        for name, call_id, args in calls
    ]
    events.append(FinishEvent(finish_reason="tool-calls"))
    return events


def user(text: str) -> Message:
    return Message(role="user", parts=[TextPart(content=text)])


async def collect(run) -> list:
    return [event async for event in run.events()]


def statuses_for(events, invocation_id: str) -> list[str]:
    return [
        e.payload["status"]
        for e in events
        if e.type == "tool-status" and e.payload["invocation_id"] == invocation_id
    ]


SUM_SCHEMA = {
    "type": "object",
    "properties": {"a": {"type": "integer"}, "b": {"type": "integer"}},
    "required": ["a", "b"],
}


@pytest.fixture
def registry() -> ToolRegistry:
    return ToolRegistry([
        ToolDefinition(
            name="sum",
            description="Add two integers.",
            input_schema=SUM_SCHEMA,
            output_schema={"type": "object", "properties": {"result": {"type": "integer"}}, "required": ["result"]},
            executor=lambda a, b: {"result": a + b},
        ),
        ToolDefinition(
            name="askForConfirmation",
            description="Ask the user to confirm.",
            input_schema={"type": "object", "properties": {}},
        ),
        ToolDefinition(
            name="showFinalAnswer",
            description="Show the final answer.",
            input_schema={"type": "object", "properties": {"message": {"type": "string"}}, "required": ["message"]},
            is_final=True,
        ),
    ])
