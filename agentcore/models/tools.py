"""Canonical tool-call data models shared by every dialect."""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, JsonValue

from agentcore.utils.ids import generate_call_id

ToolFormat = Literal["xml", "json"]
ToolArguments = dict[str, JsonValue]
ParameterType = Literal["string", "number", "integer", "boolean", "array", "object", "null"]


class ToolCall(BaseModel):
    """Backend-agnostic tool invocation."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=generate_call_id)
    name: str
    arguments: ToolArguments = Field(default_factory=dict)
    description: str | None = None
    format: ToolFormat | None = None


class ToolResult(BaseModel):
    """Outcome of executing one tool call."""

    id: str
    name: str
    result: Any = None
    error: str | None = None
    is_error: bool = False

    @classmethod
    def failure(cls, call: ToolCall, error: str) -> "ToolResult":
        """Build an error result for a call."""
        return cls(id=call.id, name=call.name, result=None, error=error, is_error=True)


class ParameterSchema(BaseModel):
    """JSON-schema description of a single tool parameter."""

    model_config = ConfigDict(extra="allow", frozen=True)

    type: ParameterType | list[ParameterType] | None = None
    description: str | None = None
    minimum: float | None = None
    maximum: float | None = None
    min_length: int | None = Field(default=None, alias="minLength")
    max_length: int | None = Field(default=None, alias="maxLength")
    pattern: str | None = None
    enum: list[JsonValue] | None = None
    items: dict[str, Any] | None = None
    default: JsonValue = None


class ToolParameters(BaseModel):
    """Object schema describing a tool's arguments."""

    model_config = ConfigDict(extra="allow", frozen=True)

    type: Literal["object"] = "object"
    properties: dict[str, ParameterSchema] = Field(default_factory=dict)
    required: list[str] = Field(default_factory=list)


class ToolDefinition(BaseModel):
    """Declaration of a tool as exposed to a model."""

    model_config = ConfigDict(frozen=True)

    name: str
    description: str
    parameters: ToolParameters = Field(default_factory=ToolParameters)

    def parameters_schema(self) -> dict[str, Any]:
        """Return parameters as a plain JSON-schema dict."""
        return self.parameters.model_dump(by_alias=True, exclude_none=True)


class FunctionCall(BaseModel):
    """Native function-call shape used by backends with built-in tool calling."""

    id: str | None = None
    name: str | None = None
    args: dict[str, JsonValue] | None = None
