"""Tools for function calling."""

from agentcore.tools.base import FunctionTool, Tool
from agentcore.tools.registry import ToolRegistry

__all__ = ["FunctionTool", "Tool", "ToolRegistry"]
