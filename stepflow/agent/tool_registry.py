"""Tool registry: definitions, schema export for the model, and lookup."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Iterable

from stepflow.agent.providers.base import ToolSchema
from stepflow.errors import DuplicateToolError, UnknownToolError


@dataclass(slots=True, frozen=True)
class ToolDefinition:
    name: str
    description: str
    input_schema: dict
    output_schema: dict | None = None
    executor: Callable[..., Any] | None = None
    is_final: bool = False

    @property
    def caller_executed(self) -> bool:
        return self.executor is None


class ToolRegistry:
    def __init__(self, tools: Iterable[ToolDefinition] = ()) -> None:
        self._tools: dict[str, ToolDefinition] = {}
        for tool in tools:
            self.register(tool)

    def register(self, tool: ToolDefinition) -> None:
        if tool.name in self._tools:
            raise DuplicateToolError(f"Tool already registered: {tool.name}", details={"tool_name": tool.name})
        self._tools[tool.name] = tool

    def lookup(self, name: str) -> ToolDefinition:
        tool = self._tools.get(name)
        if tool is None:
            raise UnknownToolError(f"Unknown tool: {name}", details={"tool_name": name})
        return tool

    def get(self, name: str) -> ToolDefinition | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools)

    def to_schemas(self) -> list[ToolSchema]:
        # Output schemas and executors stay server-side.
        return [
            ToolSchema(
                name=td.name,
                description=td.description,
                input_schema=td.input_schema,
            )
            for td in self._tools.values()
        ]
