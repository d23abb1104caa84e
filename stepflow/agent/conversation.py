"""Conversation state: ordered history plus the index of tool invocations.

Mutation is append-only at the part level. The single exception is
``apply_tool_event``, which updates an invocation in place; every mutation and
every ``snapshot`` runs under one lock so readers never see a torn update.
"""
from __future__ import annotations

import copy
import logging
import threading
from typing import Any, Iterable

from stepflow.agent.dispatcher import validate_payload
from stepflow.agent.messages import (
    Message,
    TextPart,
    ToolInvocationPart,
    ToolInvocationStatus,
    ToolResultPart,
    can_transition,
)
from stepflow.agent.providers.base import (
    FinishEvent,
    GenerationEvent,
    TextDelta,
    ToolCallRequest,
    ToolInputDelta,
    ToolInputStart,
)
from stepflow.agent.tool_registry import ToolRegistry
from stepflow.errors import InboundMessageError, RejectedByCaller, StatusTransitionError, ToolValidationError

logger = logging.getLogger(__name__)


class ConversationState:
    def __init__(self, messages: Iterable[Message] = (), *, registry: ToolRegistry | None = None) -> None:
        self._lock = threading.RLock()
        self._registry = registry
        self._messages: list[Message] = []
        self._invocations: dict[str, ToolInvocationPart] = {}
        for message in messages:
            self._ingest(copy.deepcopy(message))

    # ─── Reads ────────────────────────────────────────────────────────────────

    def snapshot(self) -> list[Message]:
        with self._lock:
            return copy.deepcopy(self._messages)

    def invocation(self, invocation_id: str) -> ToolInvocationPart | None:
        with self._lock:
            part = self._invocations.get(invocation_id)
            return copy.deepcopy(part) if part is not None else None

    def has_invocation(self, invocation_id: str) -> bool:
        with self._lock:
            return invocation_id in self._invocations

    def last_assistant_message(self) -> Message | None:
        with self._lock:
            for message in reversed(self._messages):
                if message.role == "assistant":
                    return copy.deepcopy(message)
            return None

    def pending_caller_invocations(self) -> list[str]:
        """Invocations in the latest assistant message still waiting on the caller."""
        message = self.last_assistant_message()
        if message is None:
            return []
        return [p.invocation_id for p in message.tool_invocations() if self._awaits_caller(p)]

    def has_input_after_last_assistant(self) -> bool:
        """True when a user or system message with text follows the latest assistant message."""
        with self._lock:
            for message in reversed(self._messages):
                if message.role == "assistant":
                    return False
                if message.text.strip():
                    return True
            return False

    # ─── Writes ───────────────────────────────────────────────────────────────

    def append_user_message(self, content: str | Message) -> Message:
        message = content if isinstance(content, Message) else Message(role="user", parts=[TextPart(content=content)])
        with self._lock:
            self._ingest(copy.deepcopy(message))
            return copy.deepcopy(self._messages[-1])

    def begin_assistant_message(self) -> str:
        message = Message(role="assistant")
        with self._lock:
            self._messages.append(message)
            return message.id

    def apply_model_delta(self, delta: GenerationEvent) -> int | None:
        """Apply one adapter event to the current assistant message; return the touched part index."""
        with self._lock:
            message = self._current_assistant()
            if isinstance(delta, TextDelta):
                if message.parts and isinstance(message.parts[-1], TextPart):
                    message.parts[-1].content += delta.text
                else:
                    message.parts.append(TextPart(content=delta.text))
                return len(message.parts) - 1

            if isinstance(delta, ToolInputStart):
                return self._add_invocation(message, ToolInvocationPart(
                    tool_name=delta.tool_name,
                    invocation_id=delta.invocation_id,
                ))

            if isinstance(delta, ToolInputDelta):
                part = self._require(delta.invocation_id)
                part.input_text += delta.delta
                return message.parts.index(part)

            if isinstance(delta, ToolCallRequest):
                part = self._invocations.get(delta.invocation_id)
                if part is None:
                    return self._add_invocation(message, ToolInvocationPart(
                        tool_name=delta.tool_name,
                        invocation_id=delta.invocation_id,
                        input=delta.input,
                        status=ToolInvocationStatus.INPUT_AVAILABLE,
                    ))
                self._transition(part, ToolInvocationStatus.INPUT_AVAILABLE)
                part.input = delta.input
                if delta.tool_name:
                    part.tool_name = delta.tool_name
                return message.parts.index(part)

            if isinstance(delta, FinishEvent):
                return None
            raise TypeError(f"Unsupported model delta: {type(delta).__name__}")

    def apply_tool_event(
        self,
        invocation_id: str,
        status: ToolInvocationStatus,
        *,
        output: Any = None,
        error: dict[str, Any] | None = None,
    ) -> None:
        with self._lock:
            part = self._require(invocation_id)
            self._transition(part, status)
            if output is not None:
                part.output = output
            if error is not None:
                part.error = error

    # ─── Internals ────────────────────────────────────────────────────────────

    def _ingest(self, message: Message) -> None:
        for part in message.tool_invocations():
            if part.invocation_id in self._invocations:
                raise InboundMessageError(
                    f"Duplicate invocation id: {part.invocation_id}",
                    details={"invocation_id": part.invocation_id},
                )
        self._messages.append(message)
        for part in message.tool_invocations():
            self._invocations[part.invocation_id] = part
        for result in message.tool_results():
            self._resolve_from_caller(result)

    def _resolve_from_caller(self, result: ToolResultPart) -> None:
        part = self._invocations.get(result.invocation_id)
        if part is None:
            raise InboundMessageError(
                f"Tool result references unknown invocation: {result.invocation_id}",
                details={"invocation_id": result.invocation_id},
            )
        if part.is_resolved:
            logger.debug("ignoring echoed tool result for resolved invocation %s", result.invocation_id)
            return
        if not self._awaits_caller(part):
            raise InboundMessageError(
                f"Invocation {result.invocation_id} is not awaiting a caller result.",
                details={"invocation_id": result.invocation_id, "status": part.status.value},
            )

        if result.rejected:
            part.status = ToolInvocationStatus.OUTPUT_ERROR
            part.error = RejectedByCaller(result.reason or "Rejected by caller.").to_payload()
            return

        definition = self._registry.get(part.tool_name) if self._registry else None
        if definition is not None and definition.output_schema is not None:
            try:
                validate_payload(definition.output_schema, result.output, target="output")
            except ToolValidationError as exc:
                part.status = ToolInvocationStatus.OUTPUT_ERROR
                part.error = exc.to_payload()
                return
        part.status = ToolInvocationStatus.OUTPUT_AVAILABLE
        part.output = result.output

    def _awaits_caller(self, part: ToolInvocationPart) -> bool:
        if part.status == ToolInvocationStatus.AWAITING_CONFIRMATION:
            return True
        if part.is_resolved or self._registry is None:
            return False
        definition = self._registry.get(part.tool_name)
        return (
            definition is not None
            and definition.caller_executed
            and part.status == ToolInvocationStatus.INPUT_AVAILABLE
        )

    def _current_assistant(self) -> Message:
        if not self._messages or self._messages[-1].role != "assistant":
            raise StatusTransitionError("No assistant message open for model output.")
        return self._messages[-1]

    def _add_invocation(self, message: Message, part: ToolInvocationPart) -> int:
        if part.invocation_id in self._invocations:
            raise StatusTransitionError(
                f"Invocation id already in use: {part.invocation_id}",
                details={"invocation_id": part.invocation_id},
            )
        message.parts.append(part)
        self._invocations[part.invocation_id] = part
        return len(message.parts) - 1

    def _require(self, invocation_id: str) -> ToolInvocationPart:
        part = self._invocations.get(invocation_id)
        if part is None:
            raise StatusTransitionError(
                f"Unknown invocation: {invocation_id}",
                details={"invocation_id": invocation_id},
            )
        return part

    @staticmethod
    def _transition(part: ToolInvocationPart, status: ToolInvocationStatus) -> None:
        if not can_transition(part.status, status):
            raise StatusTransitionError(
                f"Invalid status transition {part.status.value} -> {status.value}",
                details={"invocation_id": part.invocation_id},
            )
        part.status = status
