"""
Tool registry: name lookup, argument adaptation and failure-safe execution.
"""

import traceback
from typing import Any, Iterable, Union

import structlog

from ..llm.base import ToolDefinition
from .base import BaseTool, Tool, ToolResult

logger = structlog.get_logger()

AnyTool = Union[BaseTool, Tool]


class ToolRegistry:
    """Registry for the tools available to one agent."""

    def __init__(self, tools: Iterable[AnyTool] = ()):
        self._tools: dict[str, AnyTool] = {}
        for tool in tools:
            self.register(tool)

    def register(self, tool: AnyTool) -> None:
        """Register a tool. A later tool with the same name replaces the earlier one."""
        if tool.name in self._tools:
            logger.warning("Tool replaced", tool_name=tool.name)
        self._tools[tool.name] = tool
        logger.debug("Tool registered", tool_name=tool.name)

    def unregister(self, name: str) -> None:
        """Unregister a tool."""
        if name in self._tools:
            del self._tools[name]
            logger.debug("Tool unregistered", tool_name=name)

    def get(self, name: str) -> AnyTool | None:
        """Get a tool by name."""
        return self._tools.get(name)

    def list_tools(self) -> list[str]:
        """List all registered tool names."""
        return list(self._tools.keys())

    @property
    def tools(self) -> list[AnyTool]:
        return list(self._tools.values())

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def get_definitions(self) -> list[ToolDefinition]:
        """Get all tool definitions for LLM."""
        return [
            ToolDefinition(
                name=tool.name,
                description=tool.description,
                parameters=tool.get_parameters_schema(),
            )
            for tool in self._tools.values()
        ]

    @staticmethod
    def adapt_arguments(tool: AnyTool, arguments: dict[str, Any]) -> dict[str, Any]:
        """Order a call's named arguments by the tool's declared schema.

        Arguments are always passed by keyword, so the order only affects
        logging and handlers that inspect **kwargs. Keys the schema does not
        declare are kept after the declared ones; absent keys stay absent so
        the tool's own defaults apply.
        """
        properties = tool.get_parameters_schema().get("properties") or {}
        adapted = {key: arguments[key] for key in properties if key in arguments}
        for key, value in arguments.items():
            if key not in adapted:
                adapted[key] = value
        return adapted

    async def execute(self, name: str, arguments: dict[str, Any]) -> ToolResult:
        """Execute a tool by name. Never raises."""
        tool = self.get(name)
        if tool is None:
            logger.warning("Unknown tool requested", tool_name=name)
            return ToolResult(
                success=False,
                content="",
                error=f"Unknown tool: {name}",
            )

        try:
            kwargs = self.adapt_arguments(tool, arguments or {})
            logger.info("Executing tool", tool_name=name, arguments=kwargs)
            result = await tool.execute(**kwargs)
            logger.info("Tool executed", tool_name=name, success=result.success)
            return result
        except Exception as e:
            logger.error("Tool execution error", tool_name=name, error=str(e))
            detail = f"{type(e).__name__}: {e}"
            trace = "".join(traceback.format_exception(type(e), e, e.__traceback__))
            return ToolResult(
                success=False,
                content="",
                error=f"Tool execution failed: {detail}\n\nTraceback:\n{trace}",
            )
