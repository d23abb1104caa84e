"""OpenAI-compatible Chat Completions provider, streamed with function calling."""
from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, AsyncIterator

import httpx
import openai
from openai import AsyncOpenAI

from stepflow.agent.messages import Message, TextPart, ToolInvocationPart, ToolInvocationStatus
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
from stepflow.errors import AdapterTransportError
from stepflow.trace import new_call_id

FINISH_REASONS = {
    "stop": "stop",
    "tool_calls": "tool-calls",
    "function_call": "tool-calls",
    "length": "length",
}


@dataclass(slots=True)
class _PendingCall:
    id: str
    name: str
    arguments: str = ""


class OpenAIProvider(ModelAdapter):
    def __init__(self, api_key: str, base_url: str | None = None, *, client: AsyncOpenAI | None = None) -> None:
        self.client = client or AsyncOpenAI(api_key=api_key, base_url=base_url)

    async def stream(self, request: ChatRequest) -> AsyncIterator[GenerationEvent]:
        payload: dict = {
            "model": request.model,
            "messages": _build_messages(request.system_prompt, request.messages),
            "max_tokens": request.max_tokens,
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        if request.tools:
            payload["tools"] = _build_tools(request.tools)

        pending: dict[int, _PendingCall] = {}
        finish_reason = "other"
        usage: dict[str, int] = {}
        stream = None

        try:
            stream = await self.client.chat.completions.create(**payload)
            async for chunk in stream:
                if getattr(chunk, "usage", None):
                    usage = {
                        "input_tokens": chunk.usage.prompt_tokens or 0,
                        "output_tokens": chunk.usage.completion_tokens or 0,
                    }
                if not chunk.choices:
                    continue
                choice = chunk.choices[0]
                delta = choice.delta

                if delta is not None and delta.content:
                    yield TextDelta(text=delta.content)

                for fragment in (delta.tool_calls if delta is not None else None) or []:
                    call = pending.get(fragment.index)
                    if call is None:
                        # Calls stream one after another: a new index closes the earlier ones.
                        for ready in _drain(pending, below=fragment.index):
                            yield ready
                        function = fragment.function
                        call = _PendingCall(
                            id=fragment.id or new_call_id(),
                            name=(function.name if function else None) or "",
                        )
                        pending[fragment.index] = call
                        yield ToolInputStart(invocation_id=call.id, tool_name=call.name)
                    elif fragment.function and fragment.function.name and not call.name:
                        call.name = fragment.function.name
                    if fragment.function and fragment.function.arguments:
                        call.arguments += fragment.function.arguments
                        yield ToolInputDelta(invocation_id=call.id, delta=fragment.function.arguments)

                if choice.finish_reason:
                    finish_reason = FINISH_REASONS.get(choice.finish_reason, "other")
        except (openai.APIError, httpx.HTTPError) as exc:
            raise AdapterTransportError(
                f"Model provider request failed: {exc}",
                cause=exc.__class__.__name__,
            ) from exc
        finally:
            if stream is not None:
                await stream.close()

        for ready in _drain(pending, below=None):
            yield ready
        yield FinishEvent(finish_reason=finish_reason, usage=usage)


def _drain(pending: dict[int, _PendingCall], *, below: int | None) -> list[ToolCallRequest]:
    ready: list[ToolCallRequest] = []
    for index in sorted(pending):
        if below is not None and index >= below:
            break
        call = pending.pop(index)
        ready.append(ToolCallRequest(
            invocation_id=call.id,
            tool_name=call.name,
            input=_parse_arguments(call.arguments),
        ))
    return ready


def _parse_arguments(arguments: str) -> Any:
    if not arguments.strip():
        return {}
    try:
        return json.loads(arguments)
    except (json.JSONDecodeError, ValueError):
        # Left as the raw string so schema validation reports it on the invocation.
        return arguments


def _build_messages(system_prompt: str, messages: list[Message]) -> list[dict]:
    """Convert conversation Messages to OpenAI chat format."""
    result: list[dict] = []
    if system_prompt:
        result.append({"role": "system", "content": system_prompt})

    for msg in messages:
        if msg.role in {"system", "user"}:
            if msg.text:
                result.append({"role": msg.role, "content": msg.text})
            continue

        resolved = [
            p for p in msg.parts
            if isinstance(p, ToolInvocationPart) and p.is_resolved
        ]
        entry: dict = {"role": "assistant"}
        text = "".join(p.content for p in msg.parts if isinstance(p, TextPart))
        if text:
            entry["content"] = text
        if resolved:
            entry["tool_calls"] = [
                {
                    "id": part.invocation_id,
                    "type": "function",
                    "function": {
                        "name": part.tool_name,
                        "arguments": json.dumps(part.input if part.input is not None else {}, ensure_ascii=False),
                    },
                }
                for part in resolved
            ]
        if len(entry) > 1:
            result.append(entry)
        for part in resolved:
            result.append({
                "role": "tool",
                "tool_call_id": part.invocation_id,
                "content": tool_result_content(part),
            })
    return result


def tool_result_content(part: ToolInvocationPart) -> str:
    if part.status == ToolInvocationStatus.OUTPUT_ERROR:
        return json.dumps({"error": part.error or {}}, ensure_ascii=False, default=str)
    if isinstance(part.output, str):
        return part.output
    return json.dumps(part.output, ensure_ascii=False, default=str)


def _build_tools(tools: list[ToolSchema]) -> list[dict]:
    """Convert ToolSchema list to OpenAI function-calling format."""
    return [
        {
            "type": "function",
            "function": {
                "name": t.name,
                "description": t.description,
                "parameters": t.input_schema,
            },
        }
        for t in tools
    ]
