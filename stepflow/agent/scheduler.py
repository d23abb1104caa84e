"""Bounded step loop between the model and the tool set.

One run is Generating, then (Dispatching, Generating) repeated, ending Blocked, Done or Failed.
Each step streams the model's output and all tool executions it triggers
through a StreamMerger; the run ends with exactly one ``finish`` or ``error``
event unless the consumer cancels it.
"""
from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Iterable

from stepflow.agent.conversation import ConversationState
from stepflow.agent.dispatcher import ToolDispatcher
from stepflow.agent.merger import StreamEvent, StreamMerger
from stepflow.agent.messages import (
    TERMINAL_STATUSES,
    Message,
    ToolInvocationStatus,
)
from stepflow.agent.providers.base import (
    ChatRequest,
    FinishEvent,
    ModelAdapter,
    TextDelta,
    ToolCallRequest,
    ToolInputDelta,
    ToolInputStart,
)
from stepflow.agent.tool_registry import ToolRegistry
from stepflow.errors import (
    AdapterTransportError,
    EngineError,
    ExecutionFailure,
    StepBudgetExceeded,
    engine_error_payload,
)
from stepflow.observability.logging import get_runtime_logger
from stepflow.observability.metrics import get_runtime_metrics
from stepflow.protocol import PROTOCOL_VERSION, EventEnvelope
from stepflow.trace import generate_trace_id, new_call_id, new_run_id

logger = get_runtime_logger()
metrics = get_runtime_metrics()


class RunState(str, Enum):
    IDLE = "idle"
    GENERATING = "generating"
    DISPATCHING = "dispatching"
    BLOCKED = "blocked"
    DONE = "done"
    FAILED = "failed"


@dataclass(slots=True)
class StepContext:
    step_index: int
    max_steps: int
    message_id: str
    conversation: list[Message]
    pending_invocations: set[str] = field(default_factory=set)
    finish_reason: str = ""
    usage: dict[str, int] = field(default_factory=dict)


class StepScheduler:
    def __init__(
        self,
        *,
        adapter: ModelAdapter,
        registry: ToolRegistry,
        model: str,
        system_prompt: str = "",
        max_steps: int = 100,
        stream_buffer: int = 64,
        max_tokens: int = 4096,
        temperature: float | None = None,
    ) -> None:
        if max_steps < 1:
            raise ValueError("max_steps must be >= 1")
        self.adapter = adapter
        self.registry = registry
        self.dispatcher = ToolDispatcher(registry)
        self.model = model
        self.system_prompt = system_prompt
        self.max_steps = max_steps
        self.stream_buffer = stream_buffer
        self.max_tokens = max_tokens
        self.temperature = temperature

    def start(
        self,
        messages: Iterable[Message],
        *,
        run_id: str | None = None,
        trace_id: str | None = None,
    ) -> Run:
        """Build a run from the caller's authoritative history.

        Raises InboundMessageError before any event is streamed when the
        history is inconsistent (duplicate ids, results for unknown invocations).
        """
        conversation = ConversationState(messages, registry=self.registry)
        return Run(
            self,
            conversation,
            run_id=run_id or new_run_id(),
            trace_id=trace_id or generate_trace_id(),
        )


class Run:
    def __init__(self, scheduler: StepScheduler, conversation: ConversationState, *, run_id: str, trace_id: str) -> None:
        self.scheduler = scheduler
        self.conversation = conversation
        self.run_id = run_id
        self.trace_id = trace_id
        self.state = RunState.IDLE
        self.step_index = 0
        self.pending_invocations: list[str] = []
        self.error: dict[str, Any] | None = None
        self._seq = 0
        self._aliases: dict[str, str] = {}

    async def events(self) -> AsyncIterator[EventEnvelope]:
        if self.state != RunState.IDLE:
            raise RuntimeError(f"run {self.run_id} already started")
        metrics.runs_total += 1
        started = time.monotonic()
        logger.info(
            "run_started",
            extra={"trace_id": self.trace_id, "run_id": self.run_id, "outcome": "started"},
        )
        yield self._envelope(StreamEvent("start", {"run_id": self.run_id}))

        try:
            pending = self.conversation.pending_caller_invocations()
            if pending:
                yield self._blocked(pending)
                return
            if (
                self._final_answer_resolved(self.conversation.last_assistant_message())
                and not self.conversation.has_input_after_last_assistant()
            ):
                yield self._done()
                return

            for step_index in range(1, self.scheduler.max_steps + 1):
                self.step_index = step_index
                ctx = StepContext(
                    step_index=step_index,
                    max_steps=self.scheduler.max_steps,
                    message_id=self.conversation.begin_assistant_message(),
                    conversation=self.conversation.snapshot(),
                )
                step_events = self._run_step(ctx)
                try:
                    async for event in step_events:
                        yield self._envelope(event)
                finally:
                    await step_events.aclose()

                message = self.conversation.last_assistant_message()
                invocations = message.tool_invocations() if message else []
                awaiting = [
                    p.invocation_id for p in invocations
                    if p.status == ToolInvocationStatus.AWAITING_CONFIRMATION
                ]
                if awaiting:
                    yield self._blocked(awaiting)
                    return
                if not invocations or self._final_answer_resolved(message):
                    yield self._done()
                    return
                logger.info(
                    "step_continue",
                    extra={"trace_id": self.trace_id, "run_id": self.run_id, "step_index": step_index},
                )

            raise StepBudgetExceeded(
                f"Run stopped after reaching the step budget of {self.scheduler.max_steps}.",
                details={"max_steps": self.scheduler.max_steps},
            )
        except Exception as exc:  # noqa: BLE001
            self.state = RunState.FAILED
            self.error = engine_error_payload(exc, self.trace_id)
            metrics.runs_failed_total += 1
            logger.warning(
                "run_failed",
                extra={
                    "trace_id": self.trace_id,
                    "run_id": self.run_id,
                    "step_index": self.step_index,
                    "outcome": self.error["kind"],
                    "duration_ms": int((time.monotonic() - started) * 1000),
                },
                exc_info=not isinstance(exc, EngineError),
            )
            yield self._envelope(StreamEvent("error", {"error": self.error}))

    async def _run_step(self, ctx: StepContext) -> AsyncIterator[StreamEvent]:
        self.state = RunState.GENERATING
        metrics.steps_total += 1
        yield StreamEvent("start-step", {"step_index": ctx.step_index, "message_id": ctx.message_id})

        merger = StreamMerger(max_buffer=self.scheduler.stream_buffer)
        merger.add_source(self._model_source(ctx, merger), name=f"model:{ctx.step_index}")
        try:
            async for event in merger:
                yield event
        finally:
            await merger.aclose()

        yield StreamEvent(
            "finish-step",
            {
                "step_index": ctx.step_index,
                "message_id": ctx.message_id,
                "finish_reason": ctx.finish_reason,
                "usage": ctx.usage,
            },
        )

    async def _model_source(self, ctx: StepContext, merger: StreamMerger) -> AsyncIterator[StreamEvent]:
        scheduler = self.scheduler
        request = ChatRequest(
            model=scheduler.model,
            system_prompt=scheduler.system_prompt,
            messages=ctx.conversation,
            tools=scheduler.registry.to_schemas(),
            max_tokens=scheduler.max_tokens,
            temperature=scheduler.temperature,
        )
        finish: FinishEvent | None = None
        stream = scheduler.adapter.stream(request)
        try:
            async for delta in stream:
                delta = self._remap_ids(delta)
                part_index = self.conversation.apply_model_delta(delta)

                if isinstance(delta, TextDelta):
                    yield StreamEvent("text-delta", {
                        "message_id": ctx.message_id,
                        "part_index": part_index,
                        "delta": delta.text,
                    })
                elif isinstance(delta, ToolInputStart):
                    yield self._status_event(ctx, part_index, delta.invocation_id, ToolInvocationStatus.INPUT_STREAMING)
                elif isinstance(delta, ToolInputDelta):
                    yield StreamEvent("tool-input-delta", {
                        "message_id": ctx.message_id,
                        "part_index": part_index,
                        "invocation_id": delta.invocation_id,
                        "delta": delta.delta,
                    })
                elif isinstance(delta, ToolCallRequest):
                    yield self._status_event(
                        ctx, part_index, delta.invocation_id, ToolInvocationStatus.INPUT_AVAILABLE, input=delta.input,
                    )
                    self.state = RunState.DISPATCHING
                    ctx.pending_invocations.add(delta.invocation_id)
                    merger.add_source(
                        self._tool_source(ctx, part_index, delta),
                        name=f"tool:{delta.tool_name}:{delta.invocation_id}",
                    )
                elif isinstance(delta, FinishEvent):
                    finish = delta
        except EngineError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise AdapterTransportError(
                f"Model stream failed: {exc}",
                cause=exc.__class__.__name__,
            ) from exc
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

        if finish is None:
            raise AdapterTransportError("Model stream ended without a finish event.")
        ctx.finish_reason = finish.finish_reason
        ctx.usage = dict(finish.usage)

        # Tool calls whose input never completed cannot be dispatched.
        message = self.conversation.last_assistant_message()
        for index, part in enumerate(message.parts if message else []):
            if getattr(part, "status", None) == ToolInvocationStatus.INPUT_STREAMING:
                error = ExecutionFailure("Tool input stream ended before the call was complete.").to_payload()
                self.conversation.apply_tool_event(part.invocation_id, ToolInvocationStatus.OUTPUT_ERROR, error=error)
                yield self._status_event(ctx, index, part.invocation_id, ToolInvocationStatus.OUTPUT_ERROR, error=error)

    async def _tool_source(self, ctx: StepContext, part_index: int, call: ToolCallRequest) -> AsyncIterator[StreamEvent]:
        metrics.increment_tool_call(call.tool_name)
        started = time.monotonic()
        events = self.scheduler.dispatcher.dispatch(call.tool_name, call.input, call.invocation_id)
        try:
            async for tool_event in events:
                # State first, then the stream, for every event of this invocation.
                self.conversation.apply_tool_event(
                    call.invocation_id,
                    tool_event.status,
                    output=tool_event.output,
                    error=tool_event.error,
                )
                yield self._status_event(
                    ctx,
                    part_index,
                    call.invocation_id,
                    tool_event.status,
                    output=tool_event.output,
                    error=tool_event.error,
                    preliminary=tool_event.preliminary,
                )
                if tool_event.status in TERMINAL_STATUSES:
                    ctx.pending_invocations.discard(call.invocation_id)
                    if tool_event.error:
                        metrics.increment_tool_error(str(tool_event.error.get("kind")))
                    logger.info(
                        "tool_result",
                        extra={
                            "trace_id": self.trace_id,
                            "run_id": self.run_id,
                            "step_index": ctx.step_index,
                            "invocation_id": call.invocation_id,
                            "tool_name": call.tool_name,
                            "status": tool_event.status.value,
                            "duration_ms": int((time.monotonic() - started) * 1000),
                            "outcome": "ok" if tool_event.error is None else tool_event.error.get("kind"),
                        },
                    )
        finally:
            await events.aclose()

    def _remap_ids(self, delta: Any) -> Any:
        """Keep invocation ids unique across the whole conversation."""
        if isinstance(delta, ToolInputStart):
            fresh = delta.invocation_id
            if self.conversation.has_invocation(fresh) or fresh in self._aliases:
                fresh = new_call_id()
            self._aliases[delta.invocation_id] = fresh
            delta.invocation_id = fresh
        elif isinstance(delta, ToolInputDelta):
            delta.invocation_id = self._aliases.get(delta.invocation_id, delta.invocation_id)
        elif isinstance(delta, ToolCallRequest):
            if delta.invocation_id in self._aliases:
                delta.invocation_id = self._aliases.pop(delta.invocation_id)
            elif self.conversation.has_invocation(delta.invocation_id):
                delta.invocation_id = new_call_id()
        return delta

    def _final_answer_resolved(self, message: Message | None) -> bool:
        if message is None:
            return False
        for part in message.tool_invocations():
            definition = self.scheduler.registry.get(part.tool_name)
            if definition is not None and definition.is_final and part.status == ToolInvocationStatus.OUTPUT_AVAILABLE:
                return True
        return False

    def _status_event(
        self,
        ctx: StepContext,
        part_index: int | None,
        invocation_id: str,
        status: ToolInvocationStatus,
        **extra: Any,
    ) -> StreamEvent:
        part = self.conversation.invocation(invocation_id)
        payload: dict[str, Any] = {
            "message_id": ctx.message_id,
            "part_index": part_index,
            "invocation_id": invocation_id,
            "tool_name": part.tool_name if part else "",
            "status": status.value,
        }
        payload.update({k: v for k, v in extra.items() if v is not None and v is not False})
        return StreamEvent("tool-status", payload)

    def _blocked(self, pending: list[str]) -> EventEnvelope:
        self.state = RunState.BLOCKED
        self.pending_invocations = list(pending)
        metrics.runs_blocked_total += 1
        logger.info(
            "run_blocked",
            extra={"trace_id": self.trace_id, "run_id": self.run_id, "step_index": self.step_index, "outcome": "blocked"},
        )
        return self._envelope(StreamEvent("finish", {
            "state": RunState.BLOCKED.value,
            "steps": self.step_index,
            "pending_invocations": list(pending),
        }))

    def _done(self) -> EventEnvelope:
        self.state = RunState.DONE
        logger.info(
            "run_done",
            extra={"trace_id": self.trace_id, "run_id": self.run_id, "step_index": self.step_index, "outcome": "done"},
        )
        return self._envelope(StreamEvent("finish", {
            "state": RunState.DONE.value,
            "steps": self.step_index,
            "pending_invocations": [],
        }))

    def _envelope(self, event: StreamEvent) -> EventEnvelope:
        self._seq += 1
        return EventEnvelope(
            protocol_version=PROTOCOL_VERSION,
            trace_id=self.trace_id,
            event_id=str(uuid.uuid4()),
            run_id=self.run_id,
            seq=self._seq,
            ts=datetime.now(tz=timezone.utc).isoformat(),
            type=event.type,
            payload=event.payload,
        )
