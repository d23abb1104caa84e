"""Tool dispatch: schema validation, executor driving, and status events.

``ToolDispatcher.invoke`` turns one tool invocation into a lazy sequence of
``ToolEvent`` values. Executor faults and schema violations are reported as a
terminal ``output-error`` event and never propagate to the caller.
"""
from __future__ import annotations

import asyncio
import contextlib
import copy
import inspect
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable

from jsonschema import Draft7Validator
from jsonschema.exceptions import SchemaError

from stepflow.agent.messages import ToolInvocationStatus
from stepflow.agent.tool_registry import ToolDefinition, ToolRegistry
from stepflow.errors import EngineError, ExecutionFailure, ToolValidationError, UnknownToolError

logger = logging.getLogger(__name__)

_DONE = object()


@dataclass(slots=True)
class ToolEvent:
    invocation_id: str
    status: ToolInvocationStatus
    output: Any = None
    error: dict[str, Any] | None = None
    preliminary: bool = False


class ToolDispatcher:
    def __init__(self, registry: ToolRegistry) -> None:
        self.registry = registry

    async def dispatch(self, tool_name: str, raw_input: Any, invocation_id: str) -> AsyncIterator[ToolEvent]:
        """Look the tool up by name, then ``invoke`` it."""
        try:
            definition = self.registry.lookup(tool_name)
        except UnknownToolError as exc:
            yield _error_event(invocation_id, exc)
            return
        events = self.invoke(definition, raw_input, invocation_id)
        try:
            async for event in events:
                yield event
        finally:
            await events.aclose()

    async def invoke(self, definition: ToolDefinition, raw_input: Any, invocation_id: str) -> AsyncIterator[ToolEvent]:
        try:
            tool_input = apply_defaults(definition.input_schema, raw_input)
            validate_payload(definition.input_schema, tool_input, target="input")
        except ToolValidationError as exc:
            yield _error_event(invocation_id, exc)
            return

        if definition.caller_executed:
            yield ToolEvent(invocation_id=invocation_id, status=ToolInvocationStatus.AWAITING_CONFIRMATION)
            return

        yield ToolEvent(invocation_id=invocation_id, status=ToolInvocationStatus.EXECUTING)

        final: Any = _DONE
        values = _drive_executor(definition.executor, tool_input)
        try:
            async for value, partial in values:
                final = value
                if partial:
                    yield ToolEvent(
                        invocation_id=invocation_id,
                        status=ToolInvocationStatus.EXECUTING,
                        output=value,
                        preliminary=True,
                    )
        except Exception as exc:  # noqa: BLE001
            logger.warning("tool executor failed: %s", definition.name, exc_info=True)
            yield _error_event(
                invocation_id,
                ExecutionFailure(str(exc) or "Tool execution failed.", cause=exc.__class__.__name__),
            )
            return
        finally:
            await values.aclose()

        if final is _DONE:
            yield _error_event(invocation_id, ExecutionFailure("Tool executor produced no output."))
            return

        if definition.output_schema is not None:
            try:
                validate_payload(definition.output_schema, final, target="output")
            except ToolValidationError as exc:
                yield _error_event(invocation_id, exc)
                return

        yield ToolEvent(invocation_id=invocation_id, status=ToolInvocationStatus.OUTPUT_AVAILABLE, output=final)


def _error_event(invocation_id: str, exc: EngineError) -> ToolEvent:
    return ToolEvent(
        invocation_id=invocation_id,
        status=ToolInvocationStatus.OUTPUT_ERROR,
        error=exc.to_payload(),
    )


async def _drive_executor(executor: Callable[..., Any], tool_input: Any) -> AsyncIterator[tuple[Any, bool]]:
    """Yield ``(value, is_partial)`` pairs whatever the executor's shape."""
    args, kwargs = ((), tool_input) if isinstance(tool_input, dict) else ((tool_input,), {})

    if inspect.isasyncgenfunction(executor) or inspect.iscoroutinefunction(executor) or inspect.isgeneratorfunction(executor):
        result = executor(*args, **kwargs)
    else:
        result = await asyncio.to_thread(executor, *args, **kwargs)

    if inspect.isasyncgen(result) or hasattr(result, "__anext__"):
        try:
            async for value in result:
                yield value, True
        finally:
            if hasattr(result, "aclose"):
                await result.aclose()
    elif inspect.isgenerator(result):
        try:
            while True:
                value = await asyncio.to_thread(next, result, _DONE)
                if value is _DONE:
                    break
                yield value, True
        finally:
            # The generator may still be running in the worker thread after a cancel.
            with contextlib.suppress(ValueError):
                result.close()
    elif inspect.isawaitable(result):
        yield await result, False
    else:
        yield result, False


def apply_defaults(schema: dict, payload: Any) -> Any:
    """Fill top-level property defaults declared by an object schema."""
    if not isinstance(payload, dict) or not isinstance(schema.get("properties"), dict):
        return payload
    filled = dict(payload)
    for name, prop in schema["properties"].items():
        if name not in filled and isinstance(prop, dict) and "default" in prop:
            filled[name] = copy.deepcopy(prop["default"])
    return filled


def validate_payload(schema: dict, payload: Any, *, target: str) -> None:
    try:
        Draft7Validator.check_schema(schema)
        validator = Draft7Validator(schema)
        errors = sorted(validator.iter_errors(payload), key=lambda e: [str(p) for p in e.absolute_path])
    except SchemaError as exc:
        raise ToolValidationError(
            f"Tool {target} schema is invalid: {exc.message}",
            [{"path": "$", "reason": exc.message}],
            target=target,
        ) from exc
    if not errors:
        return

    issues: list[dict[str, str]] = []
    seen: set[tuple[str, str]] = set()
    for error in errors:
        base = [str(p) for p in error.absolute_path]
        if error.validator == "required" and isinstance(error.instance, dict):
            pairs = [
                (".".join(base + [name]), f"'{name}' is a required property")
                for name in error.validator_value
                if name not in error.instance
            ]
        else:
            pairs = [(".".join(base) or "$", error.message)]
        for path, reason in pairs:
            if (path, reason) not in seen:
                seen.add((path, reason))
                issues.append({"path": path, "reason": reason})

    summary = "; ".join(f"{i['path']}: {i['reason']}" for i in issues)
    raise ToolValidationError(f"Tool {target} failed validation: {summary}", issues, target=target)
