"""Unit tests for stepflow/agent/conversation.py."""
from __future__ import annotations

import pytest

from stepflow.agent.conversation import ConversationState
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
    TextDelta,
    ToolCallRequest,
    ToolInputDelta,
    ToolInputStart,
)
from stepflow.errors import InboundMessageError, StatusTransitionError

from tests.conftest import user

S = ToolInvocationStatus


def _blocked_history(*invocations: tuple[str, str]) -> list[Message]:
    return [
        user("write about rust"),
        Message(role="assistant", parts=[
            ToolInvocationPart(tool_name=name, invocation_id=call_id, input={}, status=S.AWAITING_CONFIRMATION)
            for name, call_id in invocations
        ]),
    ]


# ─── Status lifecycle ─────────────────────────────────────────────────────────

@pytest.mark.parametrize(
    "current,new,allowed",
    [
        (S.INPUT_STREAMING, S.INPUT_AVAILABLE, True),
        (S.INPUT_AVAILABLE, S.EXECUTING, True),
        (S.EXECUTING, S.EXECUTING, True),
        (S.EXECUTING, S.OUTPUT_AVAILABLE, True),
        (S.INPUT_AVAILABLE, S.OUTPUT_ERROR, True),
        (S.INPUT_AVAILABLE, S.AWAITING_CONFIRMATION, True),
        (S.EXECUTING, S.INPUT_AVAILABLE, False),
        (S.INPUT_AVAILABLE, S.INPUT_AVAILABLE, False),
        (S.OUTPUT_AVAILABLE, S.OUTPUT_ERROR, False),
        (S.OUTPUT_ERROR, S.EXECUTING, False),
    ],
)
def test_can_transition(current, new, allowed):
    assert can_transition(current, new) is allowed


def test_streamed_tool_call_builds_invocation_part():
    state = ConversationState([user("hi")])
    state.begin_assistant_message()
    assert state.apply_model_delta(TextDelta(text="Let me ")) == 0
    assert state.apply_model_delta(TextDelta(text="check.")) == 0
    assert state.apply_model_delta(ToolInputStart(invocation_id="c1", tool_name="sum")) == 1
    state.apply_model_delta(ToolInputDelta(invocation_id="c1", delta='{"a": 1,'))
    state.apply_model_delta(ToolInputDelta(invocation_id="c1", delta=' "b": 2}'))
    assert state.invocation("c1").status == S.INPUT_STREAMING
    assert state.apply_model_delta(ToolCallRequest(invocation_id="c1", tool_name="sum", input={"a": 1, "b": 2})) == 1
    assert state.apply_model_delta(FinishEvent(finish_reason="tool-calls")) is None

    message = state.last_assistant_message()
    assert message.text == "Let me check."
    part = message.tool_invocations()[0]
    assert part.status == S.INPUT_AVAILABLE
    assert part.input == {"a": 1, "b": 2}
    assert part.input_text == '{"a": 1, "b": 2}'


def test_apply_tool_event_moves_forward_and_records_output():
    state = ConversationState()
    state.begin_assistant_message()
    state.apply_model_delta(ToolCallRequest(invocation_id="c1", tool_name="sum", input={"a": 1, "b": 2}))
    state.apply_tool_event("c1", S.EXECUTING)
    state.apply_tool_event("c1", S.EXECUTING, output={"partial": True})
    state.apply_tool_event("c1", S.OUTPUT_AVAILABLE, output={"result": 3})
    part = state.invocation("c1")
    assert part.status == S.OUTPUT_AVAILABLE
    assert part.output == {"result": 3}


def test_regressing_status_raises():
    state = ConversationState()
    state.begin_assistant_message()
    state.apply_model_delta(ToolCallRequest(invocation_id="c1", tool_name="sum", input={}))
    state.apply_tool_event("c1", S.OUTPUT_ERROR, error={"kind": "ExecutionFailure", "message": "x"})
    with pytest.raises(StatusTransitionError):
        state.apply_tool_event("c1", S.OUTPUT_AVAILABLE, output=1)
    assert state.invocation("c1").status == S.OUTPUT_ERROR


def test_model_delta_without_assistant_message_raises():
    state = ConversationState([user("hi")])
    with pytest.raises(StatusTransitionError):
        state.apply_model_delta(TextDelta(text="x"))


def test_reused_invocation_id_within_run_raises():
    state = ConversationState()
    state.begin_assistant_message()
    state.apply_model_delta(ToolInputStart(invocation_id="c1", tool_name="sum"))
    with pytest.raises(StatusTransitionError):
        state.apply_model_delta(ToolInputStart(invocation_id="c1", tool_name="sum"))


def test_snapshot_is_isolated_from_later_mutation():
    state = ConversationState([user("hi")])
    state.begin_assistant_message()
    state.apply_model_delta(TextDelta(text="a"))
    snap = state.snapshot()
    state.apply_model_delta(TextDelta(text="b"))
    snap[0].parts.append(TextPart(content="tampered"))
    assert snap[-1].text == "a"
    assert state.last_assistant_message().text == "ab"
    assert state.snapshot()[0].text == "hi"


def test_invocation_returns_copy():
    state = ConversationState()
    state.begin_assistant_message()
    state.apply_model_delta(ToolCallRequest(invocation_id="c1", tool_name="sum", input={"a": 1}))
    state.invocation("c1").input["a"] = 99
    assert state.invocation("c1").input == {"a": 1}


# ─── Caller results ───────────────────────────────────────────────────────────

def test_pending_caller_invocations_from_last_assistant_message(registry):
    state = ConversationState(_blocked_history(("askForConfirmation", "c1"), ("askForConfirmation", "c2")), registry=registry)
    assert state.pending_caller_invocations() == ["c1", "c2"]


def test_tool_result_resolves_awaiting_invocation(registry):
    history = _blocked_history(("askForConfirmation", "c1"))
    history.append(Message(role="user", parts=[ToolResultPart(invocation_id="c1", output="Yes, confirmed.")]))
    state = ConversationState(history, registry=registry)
    part = state.invocation("c1")
    assert part.status == S.OUTPUT_AVAILABLE
    assert part.output == "Yes, confirmed."
    assert state.pending_caller_invocations() == []


def test_partial_results_keep_run_blocked(registry):
    history = _blocked_history(("askForConfirmation", "c1"), ("askForConfirmation", "c2"))
    history.append(Message(role="user", parts=[ToolResultPart(invocation_id="c1", output="ok")]))
    state = ConversationState(history, registry=registry)
    assert state.pending_caller_invocations() == ["c2"]


def test_rejected_result_becomes_output_error(registry):
    history = _blocked_history(("askForConfirmation", "c1"))
    history.append(Message(role="user", parts=[ToolResultPart(invocation_id="c1", rejected=True, reason="No thanks")]))
    state = ConversationState(history, registry=registry)
    part = state.invocation("c1")
    assert part.status == S.OUTPUT_ERROR
    assert part.error == {"kind": "Rejected", "message": "No thanks"}


def test_caller_result_failing_output_schema_is_output_error():
    from stepflow.agent.tool_registry import ToolDefinition, ToolRegistry

    registry = ToolRegistry([ToolDefinition(
        name="pick",
        description="pick one",
        input_schema={"type": "object"},
        output_schema={"type": "string"},
    )])
    history = _blocked_history(("pick", "c1"))
    history.append(Message(role="user", parts=[ToolResultPart(invocation_id="c1", output=42)]))
    state = ConversationState(history, registry=registry)
    assert state.invocation("c1").error["kind"] == "ValidationError"


def test_result_for_unknown_invocation_is_rejected(registry):
    history = [user("hi"), Message(role="user", parts=[ToolResultPart(invocation_id="ghost", output=1)])]
    with pytest.raises(InboundMessageError) as exc:
        ConversationState(history, registry=registry)
    assert exc.value.details == {"invocation_id": "ghost"}


def test_result_for_executing_server_tool_is_rejected(registry):
    history = [
        user("hi"),
        Message(role="assistant", parts=[
            ToolInvocationPart(tool_name="sum", invocation_id="c1", input={}, status=S.EXECUTING),
        ]),
        Message(role="user", parts=[ToolResultPart(invocation_id="c1", output={"result": 1})]),
    ]
    with pytest.raises(InboundMessageError):
        ConversationState(history, registry=registry)


def test_echoed_result_for_resolved_invocation_is_ignored(registry):
    history = [
        user("hi"),
        Message(role="assistant", parts=[
            ToolInvocationPart(tool_name="askForConfirmation", invocation_id="c1", input={},
                               status=S.OUTPUT_AVAILABLE, output="first"),
        ]),
        Message(role="user", parts=[ToolResultPart(invocation_id="c1", output="second")]),
    ]
    state = ConversationState(history, registry=registry)
    assert state.invocation("c1").output == "first"


def test_duplicate_invocation_ids_in_history_rejected():
    part = ToolInvocationPart(tool_name="sum", invocation_id="c1", input={}, status=S.OUTPUT_AVAILABLE, output=1)
    history = [
        Message(role="assistant", parts=[part]),
        Message(role="assistant", parts=[part]),
    ]
    with pytest.raises(InboundMessageError):
        ConversationState(history)


def test_input_available_caller_tool_counts_as_pending(registry):
    history = [
        user("hi"),
        Message(role="assistant", parts=[
            ToolInvocationPart(tool_name="askForConfirmation", invocation_id="c1", input={}, status=S.INPUT_AVAILABLE),
        ]),
    ]
    state = ConversationState(history, registry=registry)
    assert state.pending_caller_invocations() == ["c1"]


def test_input_after_last_assistant_detects_follow_up_text(registry):
    history = [
        user("write"),
        Message(role="assistant", parts=[
            ToolInvocationPart(tool_name="showFinalAnswer", invocation_id="c1", input={"message": "done"},
                               status=S.AWAITING_CONFIRMATION),
        ]),
        Message(role="user", parts=[ToolResultPart(invocation_id="c1", output="shown")]),
    ]
    state = ConversationState(history, registry=registry)
    assert state.has_input_after_last_assistant() is False

    state.append_user_message("another one, please")
    assert state.has_input_after_last_assistant() is True

    state.begin_assistant_message()
    assert state.has_input_after_last_assistant() is False
