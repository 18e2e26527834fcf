"""Tool registry for function calling."""

from agentcore.models.tools import ToolDefinition
from agentcore.tools.base import Tool
from agentcore.utils.logging import get_logger

logger = get_logger(__name__)


class ToolRegistry:
    """Registry for managing executable tools."""

    def __init__(self, tools: list[Tool] | None = None):
        """Initialize registry with an optional initial set of tools."""
        self._tools: dict[str, Tool] = {}
        for tool in tools or []:
            self.register_tool(tool)

    def register_tool(self, tool: Tool) -> None:
        """Register a tool, replacing any tool with the same name."""
        if tool.name in self._tools:
            logger.warning(f"Replacing registered tool: {tool.name}")
        self._tools[tool.name] = tool

    def unregister_tool(self, name: str) -> bool:
        """Remove a tool; returns whether it was registered."""
        return self._tools.pop(name, None) is not None

    def get_tool(self, name: str) -> Tool | None:
        """Look up a tool by name."""
        return self._tools.get(name)

    def get_all_tools(self) -> list[Tool]:
        """Get all registered tools in registration order."""
        return list(self._tools.values())

    def get_tool_names(self) -> list[str]:
        """Get list of all registered tool names."""
        return list(self._tools.keys())

    def has_tool(self, name: str) -> bool:
        """Check if a tool is registered."""
        return name in self._tools

    def get_definitions(self, names: list[str] | None = None) -> list[ToolDefinition]:
        """Get definitions for all tools, or for the named subset in registration order."""
        tools = self.get_all_tools()
        if names:
            wanted = set(names)
            tools = [tool for tool in tools if tool.name in wanted]
        return [tool.schema for tool in tools]
