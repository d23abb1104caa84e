"""Conversation data model: messages, parts and the tool invocation lifecycle.

Also holds the JSON codec used for inbound submissions and for the
``tool-invocation`` parts echoed back by callers.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union

from stepflow.errors import InboundMessageError
from stepflow.trace import new_message_id

ROLES = {"user", "assistant", "system"}


class ToolInvocationStatus(str, Enum):
    INPUT_STREAMING = "input-streaming"
    INPUT_AVAILABLE = "input-available"
    EXECUTING = "executing"
    AWAITING_CONFIRMATION = "awaiting-confirmation"
    OUTPUT_AVAILABLE = "output-available"
    OUTPUT_ERROR = "output-error"


STATUS_RANK = {
    ToolInvocationStatus.INPUT_STREAMING: 0,
    ToolInvocationStatus.INPUT_AVAILABLE: 1,
    ToolInvocationStatus.EXECUTING: 2,
    ToolInvocationStatus.AWAITING_CONFIRMATION: 3,
    ToolInvocationStatus.OUTPUT_AVAILABLE: 4,
    ToolInvocationStatus.OUTPUT_ERROR: 4,
}
TERMINAL_STATUSES = frozenset({ToolInvocationStatus.OUTPUT_AVAILABLE, ToolInvocationStatus.OUTPUT_ERROR})


def can_transition(current: ToolInvocationStatus, new: ToolInvocationStatus) -> bool:
    """Statuses only move forward; ``executing`` may repeat to carry partials."""
    if current in TERMINAL_STATUSES:
        return False
    if current == new == ToolInvocationStatus.EXECUTING:
        return True
    return STATUS_RANK[new] > STATUS_RANK[current]


@dataclass(slots=True)
class TextPart:
    content: str


@dataclass(slots=True)
class ToolInvocationPart:
    tool_name: str
    invocation_id: str
    input: Any = None
    status: ToolInvocationStatus = ToolInvocationStatus.INPUT_STREAMING
    output: Any = None
    error: dict[str, Any] | None = None
    input_text: str = ""

    @property
    def is_resolved(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass(slots=True)
class ToolResultPart:
    """Caller-supplied result (or rejection) for a pending invocation."""

    invocation_id: str
    output: Any = None
    rejected: bool = False
    reason: str = ""


Part = Union[TextPart, ToolInvocationPart, ToolResultPart]


@dataclass(slots=True)
class Message:
    role: str
    parts: list[Part] = field(default_factory=list)
    id: str = field(default_factory=new_message_id)

    @property
    def text(self) -> str:
        return "".join(p.content for p in self.parts if isinstance(p, TextPart))

    def tool_invocations(self) -> list[ToolInvocationPart]:
        return [p for p in self.parts if isinstance(p, ToolInvocationPart)]

    def tool_results(self) -> list[ToolResultPart]:
        return [p for p in self.parts if isinstance(p, ToolResultPart)]


def part_to_dict(part: Part) -> dict[str, Any]:
    if isinstance(part, TextPart):
        return {"type": "text", "text": part.content}
    if isinstance(part, ToolInvocationPart):
        data: dict[str, Any] = {
            "type": "tool-invocation",
            "tool_name": part.tool_name,
            "invocation_id": part.invocation_id,
            "input": part.input,
            "status": part.status.value,
        }
        if part.output is not None:
            data["output"] = part.output
        if part.error is not None:
            data["error"] = part.error
        return data
    data = {"type": "tool-result", "invocation_id": part.invocation_id}
    if part.rejected:
        data["rejected"] = True
        data["reason"] = part.reason
    else:
        data["output"] = part.output
    return data


def message_to_dict(message: Message) -> dict[str, Any]:
    return {
        "id": message.id,
        "role": message.role,
        "parts": [part_to_dict(p) for p in message.parts],
    }


def message_from_dict(data: Any) -> Message:
    if not isinstance(data, dict):
        raise InboundMessageError("Message must be a JSON object.")
    role = str(data.get("role") or "").strip()
    if role not in ROLES:
        raise InboundMessageError(f"Unsupported message role: {role!r}", details={"role": role})

    raw_parts = data.get("parts")
    if raw_parts is None:
        content = data.get("content")
        raw_parts = [{"type": "text", "text": content}] if isinstance(content, str) and content else []
    if not isinstance(raw_parts, list):
        raise InboundMessageError("Message parts must be a list.")

    message = Message(role=role, parts=[_part_from_dict(p) for p in raw_parts])
    if data.get("id"):
        message.id = str(data["id"])
    return message


def _part_from_dict(data: Any) -> Part:
    if not isinstance(data, dict):
        raise InboundMessageError("Message part must be a JSON object.")
    part_type = data.get("type")

    if part_type == "text":
        return TextPart(content=str(data.get("text") or ""))

    invocation_id = str(data.get("invocation_id") or "").strip()
    if part_type in {"tool-invocation", "tool-result"} and not invocation_id:
        raise InboundMessageError(f"{part_type} part requires invocation_id.")

    if part_type == "tool-invocation":
        try:
            status = ToolInvocationStatus(data.get("status") or ToolInvocationStatus.INPUT_AVAILABLE.value)
        except ValueError as exc:
            raise InboundMessageError(
                f"Unknown tool invocation status: {data.get('status')!r}",
                details={"invocation_id": invocation_id},
            ) from exc
        return ToolInvocationPart(
            tool_name=str(data.get("tool_name") or ""),
            invocation_id=invocation_id,
            input=data.get("input"),
            status=status,
            output=data.get("output"),
            error=data.get("error"),
        )

    if part_type == "tool-result":
        return ToolResultPart(
            invocation_id=invocation_id,
            output=data.get("output"),
            rejected=bool(data.get("rejected", False)),
            reason=str(data.get("reason") or ""),
        )

    raise InboundMessageError(f"Unsupported part type: {part_type!r}")
