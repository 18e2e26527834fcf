"""Base types and definitions for tools."""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel

from agentcore.clients.signals import AbortSignal
from agentcore.models.tools import ToolArguments, ToolDefinition, ToolParameters, ToolResult

ToolHandler = Callable[[Any, AbortSignal | None], Awaitable[Any]]


@runtime_checkable
class Tool(Protocol):
    """An executable tool as seen by the execution engine."""

    @property
    def name(self) -> str: ...

    @property
    def schema(self) -> ToolDefinition: ...

    async def execute(self, arguments: ToolArguments, abort_signal: AbortSignal | None = None) -> ToolResult:
        """Run the tool's side effect."""
        ...


@dataclass
class FunctionTool:
    """Tool backed by an async handler.

    When ``input_model`` is set the handler receives the validated model and the
    declared parameters come from its JSON schema; otherwise it receives the raw
    argument dict.
    """

    name: str
    description: str
    handler: ToolHandler
    input_model: type[BaseModel] | None = None
    parameters: ToolParameters | None = None

    @property
    def schema(self) -> ToolDefinition:
        """Get the definition exposed to models."""
        if self.parameters is not None:
            parameters = self.parameters
        elif self.input_model is not None:
            parameters = ToolParameters.model_validate(self.input_model.model_json_schema())
        else:
            parameters = ToolParameters()
        return ToolDefinition(name=self.name, description=self.description, parameters=parameters)

    def parse_input(self, raw_input: ToolArguments) -> Any:
        """Parse and validate tool input."""
        if self.input_model is None:
            return raw_input
        return self.input_model.model_validate(raw_input)

    async def execute(self, arguments: ToolArguments, abort_signal: AbortSignal | None = None) -> ToolResult:
        """Run the handler and wrap its return value."""
        output = await self.handler(self.parse_input(arguments), abort_signal)
        if isinstance(output, ToolResult):
            return output
        return ToolResult(id=self.name, name=self.name, result=output)
