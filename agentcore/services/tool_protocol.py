"""Translation between canonical tool calls and backend dialects."""

import json
import re
from typing import Any, Protocol

from pydantic import ValidationError

from agentcore.errors import ConversionError
from agentcore.models.tools import FunctionCall, ToolCall, ToolDefinition, ToolFormat, ToolResult
from agentcore.utils.logging import get_logger

logger = get_logger(__name__)

FUNCTION_CALLS_BLOCK = re.compile(r"<function_calls>(.*?)</function_calls>", re.DOTALL)
INVOKE_ELEMENT = re.compile(r'<invoke\s+name="([^"]+)"[^>]*>(.*?)</invoke>', re.DOTALL)
PARAMETER_ELEMENT = re.compile(r'<parameter\s+name="([^"]+)"[^>]*>(.*?)</parameter>', re.DOTALL)
PARTIAL_INVOKE = re.compile(r'<invoke\s+name="([^"]+)"[^>]*>')
PARTIAL_PARAMETER = re.compile(r'<parameter\s+name="([^"]+)"[^>]*>([^<]*)')

JSON_CALL_PATTERNS = (
    re.compile(r'\{"function_call":\s*\{\s*"name":\s*"([^"]+)"', re.IGNORECASE),
    re.compile(r'```json\s*\{\s*"function_call":\s*\{\s*"name":\s*"([^"]+)"', re.IGNORECASE),
)
PARTIAL_ARGUMENTS = re.compile(r'"arguments":\s*\{([^}]*)')

DIRECTORY_TOOL = "list_directory"


def _build_call(name: Any, arguments: Any, format: ToolFormat) -> ToolCall:
    """Create a canonical call from loosely-typed parts."""
    if not isinstance(name, str) or not name:
        raise ConversionError(f"Invalid tool name: {name!r}", code="invalid_name", provider=format)
    if arguments is None:
        arguments = {}
    if not isinstance(arguments, dict):
        raise ConversionError(
            f"Arguments for {name} must be an object, got {type(arguments).__name__}",
            code="invalid_arguments",
            provider=format,
        )
    try:
        return ToolCall(name=name, arguments=arguments, format=format)
    except ValidationError as e:
        raise ConversionError(
            f"Arguments for {name} are not JSON values: {e}", code="invalid_arguments", provider=format
        ) from e


def _tool_catalog(tools: list[ToolDefinition]) -> str:
    lines = []
    for tool in tools:
        params = ", ".join(tool.parameters.properties)
        lines.append(f"• {tool.name}({params}): {tool.description}")
    return "\n".join(lines) + "\n"


class ToolProvider(Protocol):
    """A textual tool-calling dialect."""

    provider_id: str

    def parse_tool_calls(self, response_text: str) -> list[ToolCall]:
        """Extract calls from model output; raises ConversionError on malformed calls."""
        ...

    def format_tool_definition(self, tool: ToolDefinition) -> dict[str, Any]:
        """Render a definition in the dialect's declaration shape."""
        ...

    def format_tool_result(self, result: ToolResult) -> str:
        """Render a result for re-insertion into the conversation."""
        ...

    def get_tool_prompt(self, tools: list[ToolDefinition]) -> str:
        """Instructions teaching a model the calling convention."""
        ...


class XmlToolProvider:
    """Tag-delimited ``<function_calls>``/``<invoke>`` dialect."""

    provider_id = "xml"

    def parse_tool_calls(self, response_text: str) -> list[ToolCall]:
        block = FUNCTION_CALLS_BLOCK.search(response_text)
        if not block:
            # Truncated streaming output: salvage the first invoke tag
            partial = PARTIAL_INVOKE.search(response_text)
            if partial:
                name = partial.group(1)
                return [_build_call(name, self._extract_partial_parameters(name, response_text), "xml")]
            return []

        calls = []
        for invoke in INVOKE_ELEMENT.finditer(block.group(1)):
            parameters: dict[str, Any] = {}
            for parameter in PARAMETER_ELEMENT.finditer(invoke.group(2)):
                value = parameter.group(2).strip()
                try:
                    parameters[parameter.group(1)] = json.loads(value)
                except json.JSONDecodeError:
                    parameters[parameter.group(1)] = value
            calls.append(_build_call(invoke.group(1), parameters, "xml"))
        return calls

    def format_tool_definition(self, tool: ToolDefinition) -> dict[str, Any]:
        return {
            "name": tool.name,
            "description": tool.description,
            "input_schema": tool.parameters_schema(),
        }

    def format_tool_result(self, result: ToolResult) -> str:
        header = f'<tool_result name="{result.name}" id="{result.id}">'
        if result.is_error:
            return f"{header}\n<error>{result.error}</error>\n</tool_result>"
        body = result.result if isinstance(result.result, str) else json.dumps(result.result, indent=2, default=str)
        return f"{header}\n{body}\n</tool_result>"

    def get_tool_prompt(self, tools: list[ToolDefinition]) -> str:
        return (
            "You have access to the following tools. When you need to use a tool, respond with XML in this format:\n"
            "\n"
            "<function_calls>\n"
            '<invoke name="TOOL_NAME">\n'
            '<parameter name="param1">value1</parameter>\n'
            '<parameter name="param2">value2</parameter>\n'
            "</invoke>\n"
            "</function_calls>\n"
            "\n"
            "Available tools:\n"
            f"{_tool_catalog(tools)}"
            "\n"
            "Example:\n"
            "<function_calls>\n"
            f'<invoke name="{DIRECTORY_TOOL}">\n'
            '<parameter name="path">.</parameter>\n'
            "</invoke>\n"
            "</function_calls>\n"
            "\n"
        )

    def _extract_partial_parameters(self, name: str, text: str) -> dict[str, Any]:
        parameters: dict[str, Any] = {}
        if name == DIRECTORY_TOOL:
            parameters["path"] = "."
        match = PARTIAL_PARAMETER.search(text)
        if match:
            parameters[match.group(1)] = match.group(2).strip()
        return parameters


class JsonToolProvider:
    """``{"function_call": {...}}`` envelope dialect."""

    provider_id = "json"

    def parse_tool_calls(self, response_text: str) -> list[ToolCall]:
        try:
            return self._calls_from_envelope(json.loads(response_text))
        except json.JSONDecodeError:
            logger.debug("Response is not a JSON document, scanning for a partial function_call")

        for pattern in JSON_CALL_PATTERNS:
            match = pattern.search(response_text)
            if match:
                name = match.group(1)
                return [_build_call(name, self._extract_partial_arguments(response_text, name), "json")]
        return []

    def format_tool_definition(self, tool: ToolDefinition) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": tool.name,
                "description": tool.description,
                "parameters": tool.parameters_schema(),
            },
        }

    def format_tool_result(self, result: ToolResult) -> str:
        return json.dumps(
            {
                "tool_call_id": result.id,
                "name": result.name,
                "result": result.result,
                "error": result.error,
            },
            default=str,
        )

    def get_tool_prompt(self, tools: list[ToolDefinition]) -> str:
        return (
            "You have access to function calling. When you need to use tools, respond ONLY with valid JSON.\n"
            "\n"
            "Format: ```json\n"
            '{"function_call": {"name": "TOOL_NAME", "arguments": {...}}}\n'
            "```\n"
            "\n"
            "Available functions:\n"
            f"{_tool_catalog(tools)}"
            "\n"
            "Example:\n"
            "```json\n"
            f'{{"function_call": {{"name": "{DIRECTORY_TOOL}", "arguments": {{"path": "."}}}}}}\n'
            "```\n"
            "\n"
        )

    def _calls_from_envelope(self, parsed: Any) -> list[ToolCall]:
        if not isinstance(parsed, dict):
            return []
        if isinstance(parsed.get("function_call"), dict):
            call = parsed["function_call"]
            return [_build_call(call.get("name"), call.get("arguments"), "json")]
        if isinstance(parsed.get("function_calls"), list):
            return [
                _build_call(call.get("name"), call.get("arguments"), "json")
                for call in parsed["function_calls"]
                if isinstance(call, dict)
            ]
        return []

    def _extract_partial_arguments(self, text: str, tool_name: str) -> dict[str, Any]:
        arguments: dict[str, Any] = {}
        if tool_name == DIRECTORY_TOOL:
            arguments["path"] = "."
        match = PARTIAL_ARGUMENTS.search(text)
        if match:
            try:
                visible = json.loads("{" + match.group(1) + "}")
            except json.JSONDecodeError:
                visible = None
            if isinstance(visible, dict):
                arguments.update(visible)
        return arguments


class UniversalToolInterface:
    """Dialect-agnostic entry point over the registered providers."""

    def __init__(self, providers: list[ToolProvider] | None = None):
        """Initialize with the built-in providers, or an explicit list."""
        self._providers: dict[str, ToolProvider] = {}
        for provider in providers if providers is not None else [XmlToolProvider(), JsonToolProvider()]:
            self.register_provider(provider)

    def register_provider(self, provider: ToolProvider) -> None:
        """Register a dialect, replacing any provider with the same id."""
        self._providers[provider.provider_id] = provider

    def get_provider(self, format: str) -> ToolProvider | None:
        """Look up a provider by id."""
        return self._providers.get(format)

    def parse_tool_calls(self, response_text: str, preferred_format: str = "xml") -> list[ToolCall]:
        """Parse calls with the preferred dialect first, then the others.

        Args:
            response_text: Raw model output
            preferred_format: Provider id tried first

        Returns:
            Calls from the first provider that finds any; empty when none do
        """
        if not response_text:
            return []

        ordered = [self._providers[preferred_format]] if preferred_format in self._providers else []
        ordered += [provider for key, provider in self._providers.items() if key != preferred_format]

        for provider in ordered:
            try:
                calls = provider.parse_tool_calls(response_text)
            except ConversionError as e:
                logger.debug(f"Provider {provider.provider_id} rejected response ({e.code}): {e}")
                continue
            if calls:
                logger.debug(f"Parsed {len(calls)} tool calls with {provider.provider_id} provider")
                return calls
        return []

    def from_function_call(self, call: FunctionCall) -> ToolCall:
        """Convert a native function call to the canonical shape."""
        if call.id:
            return ToolCall(id=call.id, name=call.name or "unknown_function", arguments=call.args or {}, format="json")
        return ToolCall(name=call.name or "unknown_function", arguments=call.args or {}, format="json")

    def to_function_call(self, call: ToolCall) -> FunctionCall:
        """Convert a canonical call to the native function-call shape."""
        return FunctionCall(id=call.id, name=call.name, args=dict(call.arguments))
