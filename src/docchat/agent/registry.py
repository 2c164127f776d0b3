"""Per-turn tool registry with conditionally activated tools."""

from __future__ import annotations

from collections.abc import Callable
from time import perf_counter
from typing import Any

from docchat.agent.tools import Tool, TurnCache
from docchat.errors import ToolNotFoundError
from docchat.types import ToolResult, ToolTrace


class ToolRegistry:
    """Stores the tools declared to the model for one turn.

    Conditional tools are held back until a tool result asks for them by name.
    """

    def __init__(self, tools: list[Tool] | None = None, conditional_tools: list[Tool] | None = None) -> None:
        self._tools: dict[str, Tool] = {}
        self._conditional: dict[str, Tool] = {}
        self._observer: Callable[[ToolTrace], None] | None = None
        for tool in tools or []:
            self.register(tool)
        for tool in conditional_tools or []:
            self.register_conditional(tool)

    def register(self, tool: Tool) -> None:
        if tool.name in self._tools:
            raise ValueError(f"Tool already registered: {tool.name}")
        self._tools[tool.name] = tool

    def register_conditional(self, tool: Tool) -> None:
        if tool.name in self._conditional:
            raise ValueError(f"Conditional tool already registered: {tool.name}")
        self._conditional[tool.name] = tool

    def activate(self, names: list[str]) -> list[str]:
        """Move named conditional tools into the active set; returns the names added."""
        added = []
        for name in names:
            tool = self._conditional.get(name)
            if tool is not None and name not in self._tools:
                self._tools[name] = tool
                added.append(name)
        return added

    def set_observer(self, observer: Callable[[ToolTrace], None] | None) -> None:
        """Set an optional callback invoked after each tool execution."""
        self._observer = observer

    def get(self, name: str) -> Tool:
        tool = self._tools.get(name)
        if tool is None:
            raise ToolNotFoundError(name)
        return tool

    def names(self) -> list[str]:
        return list(self._tools)

    def definitions(self) -> list[dict[str, Any]] | None:
        if not self._tools:
            return None
        return [tool.definition for tool in self._tools.values()]

    async def execute(self, name: str, arguments: str, cache: TurnCache) -> ToolResult:
        tool = self.get(name)
        start = perf_counter()
        result = await tool.execute(arguments, cache)
        latency_ms = (perf_counter() - start) * 1000.0

        if self._observer is not None:
            self._observer(
                ToolTrace(
                    name=name,
                    input_payload=arguments,
                    output_preview=result.tool_output[:320],
                    latency_ms=latency_ms,
                )
            )
        return result
