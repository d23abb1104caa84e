"""Anthropic Messages API provider, streamed with native tool_use support."""
from __future__ import annotations

import json
from typing import Any, AsyncIterator

import anthropic
import httpx
from anthropic import AsyncAnthropic

from stepflow.agent.messages import Message, ToolInvocationPart, ToolInvocationStatus
from stepflow.agent.providers.base import (
    ChatRequest,
    FinishEvent,
    GenerationEvent,
    ModelAdapter,
    TextDelta,
    ToolCallRequest,
    ToolInputDelta,
    ToolInputStart,
    ToolSchema,
)
from stepflow.agent.providers.openai_provider import tool_result_content
from stepflow.errors import AdapterTransportError

STOP_REASONS = {
    "end_turn": "stop",
    "stop_sequence": "stop",
    "tool_use": "tool-calls",
    "max_tokens": "length",
}


class AnthropicProvider(ModelAdapter):
    def __init__(self, api_key: str, base_url: str | None = None, *, client: AsyncAnthropic | None = None) -> None:
        self.client = client or AsyncAnthropic(api_key=api_key, base_url=base_url)

    async def stream(self, request: ChatRequest) -> AsyncIterator[GenerationEvent]:
        system_prompt, messages = _build_messages(request.system_prompt, request.messages)
        payload: dict = {
            "model": request.model,
            "max_tokens": request.max_tokens,
            "messages": messages,
            "stream": True,
        }
        if system_prompt:
            payload["system"] = system_prompt
        if request.tools:
            payload["tools"] = _build_tools(request.tools)
        if request.temperature is not None:
            payload["temperature"] = request.temperature

        # content block index -> [tool_use id, name, accumulated json]
        blocks: dict[int, list[str]] = {}
        usage: dict[str, int] = {}
        stop_reason = "other"
        stream = None

        try:
            stream = await self.client.messages.create(**payload)
            async for event in stream:
                if event.type == "message_start":
                    usage["input_tokens"] = event.message.usage.input_tokens
                elif event.type == "content_block_start" and event.content_block.type == "tool_use":
                    block = event.content_block
                    blocks[event.index] = [block.id, block.name, ""]
                    yield ToolInputStart(invocation_id=block.id, tool_name=block.name)
                elif event.type == "content_block_delta":
                    if event.delta.type == "text_delta":
                        yield TextDelta(text=event.delta.text)
                    elif event.delta.type == "input_json_delta" and event.index in blocks:
                        blocks[event.index][2] += event.delta.partial_json
                        yield ToolInputDelta(invocation_id=blocks[event.index][0], delta=event.delta.partial_json)
                elif event.type == "content_block_stop" and event.index in blocks:
                    call_id, name, raw = blocks.pop(event.index)
                    yield ToolCallRequest(invocation_id=call_id, tool_name=name, input=_parse_input(raw))
                elif event.type == "message_delta":
                    stop_reason = STOP_REASONS.get(event.delta.stop_reason or "", "other")
                    usage["output_tokens"] = event.usage.output_tokens
        except (anthropic.APIError, httpx.HTTPError) as exc:
            raise AdapterTransportError(
                f"Model provider request failed: {exc}",
                cause=exc.__class__.__name__,
            ) from exc
        finally:
            if stream is not None:
                await stream.close()

        yield FinishEvent(finish_reason=stop_reason, usage=usage)


def _parse_input(raw: str) -> Any:
    if not raw.strip():
        return {}
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, ValueError):
        return raw


def _build_messages(system_prompt: str, messages: list[Message]) -> tuple[str, list[dict]]:
    """Convert conversation Messages to Anthropic format; system turns fold into the prompt."""
    system_chunks = [system_prompt] if system_prompt else []
    result: list[dict] = []
    for msg in messages:
        if msg.role == "system":
            if msg.text:
                system_chunks.append(msg.text)
        elif msg.role == "user":
            if msg.text:
                result.append({"role": "user", "content": msg.text})
        elif msg.role == "assistant":
            content: list[dict] = []
            resolved: list[ToolInvocationPart] = []
            if msg.text:
                content.append({"type": "text", "text": msg.text})
            for part in msg.tool_invocations():
                if not part.is_resolved:
                    continue
                resolved.append(part)
                content.append({
                    "type": "tool_use",
                    "id": part.invocation_id,
                    "name": part.tool_name,
                    "input": part.input if isinstance(part.input, dict) else {},
                })
            if content:
                result.append({"role": "assistant", "content": content})
            if resolved:
                result.append({
                    "role": "user",
                    "content": [
                        {
                            "type": "tool_result",
                            "tool_use_id": part.invocation_id,
                            "content": tool_result_content(part),
                            "is_error": part.status == ToolInvocationStatus.OUTPUT_ERROR,
                        }
                        for part in resolved
                    ],
                })
    return "\n\n".join(system_chunks), result


def _build_tools(tools: list[ToolSchema]) -> list[dict]:
    """Convert ToolSchema list to Anthropic tools format."""
    return [
        {
            "name": t.name,
            "description": t.description,
            "input_schema": t.input_schema,
        }
        for t in tools
    ]
