"""Provider base types: ChatRequest / generation events / ModelAdapter."""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Union

from stepflow.agent.messages import Message


@dataclass(slots=True)
class ToolSchema:
    name: str
    description: str
    input_schema: dict


@dataclass(slots=True)
class ChatRequest:
    model: str
    system_prompt: str
    messages: list[Message]
    tools: list[ToolSchema] = field(default_factory=list)
    max_tokens: int = 4096
    temperature: float | None = None


@dataclass(slots=True)
class TextDelta:
    text: str


@dataclass(slots=True)
class ToolInputStart:
    invocation_id: str
    tool_name: str


@dataclass(slots=True)
class ToolInputDelta:
    invocation_id: str
    delta: str


@dataclass(slots=True)
class ToolCallRequest:
    invocation_id: str
    tool_name: str
    input: Any


@dataclass(slots=True)
class FinishEvent:
    finish_reason: str  # "stop" | "tool-calls" | "length" | "other"
    usage: dict[str, int] = field(default_factory=dict)


GenerationEvent = Union[TextDelta, ToolInputStart, ToolInputDelta, ToolCallRequest, FinishEvent]


class ModelAdapter(ABC):
    @abstractmethod
    def stream(self, request: ChatRequest) -> AsyncIterator[GenerationEvent]:
        """Lazily yield generation events, ending with exactly one FinishEvent."""

    async def complete_text(self, request: ChatRequest) -> AsyncIterator[str]:
        """Convenience view over ``stream`` yielding only text deltas."""
        events = self.stream(request)
        try:
            async for event in events:
                if isinstance(event, TextDelta) and event.text:
                    yield event.text
        finally:
            await events.aclose()
