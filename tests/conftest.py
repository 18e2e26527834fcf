"""Shared fixtures: scripted model adapters and recording tools."""

from collections.abc import AsyncIterator
from typing import Any

import pytest

from agentcore.clients.base import InMemoryModelContext
from agentcore.models.llm import ContextOptions, GenerationOptions, GenerationResult, ModelCapabilities, ModelHealth
from agentcore.models.tools import ParameterSchema, ToolDefinition, ToolParameters
from agentcore.tools.base import FunctionTool
from agentcore.tools.registry import ToolRegistry
from agentcore.utils.tokens import TokenCounter

DEFAULT_RESPONSE = '{"response": "done"}'


class FakeModel:
    """Model adapter that replays scripted responses.

    ``responses`` feed ``generate_text`` and ``tool_results`` feed
    ``generate_with_tools``; an exception in either list is raised instead of
    returned. Once a script runs out the default response is used.
    """

    def __init__(
        self,
        responses: list[Any] | None = None,
        tool_results: list[Any] | None = None,
        capabilities: ModelCapabilities | None = None,
        name: str = "fake-model",
        backend: str = "ollama",
    ):
        self.name = name
        self.backend = backend
        self.capabilities = capabilities or ModelCapabilities()
        self.responses = list(responses or [])
        self.tool_results = list(tool_results or [])
        self.prompts: list[str] = []
        self.options: list[GenerationOptions | None] = []
        self.tool_batches: list[list[ToolDefinition]] = []
        self.token_counter = TokenCounter(None)

    async def generate_text(self, prompt: str, options: GenerationOptions | None = None) -> str:
        self.prompts.append(prompt)
        self.options.append(options)
        response = self.responses.pop(0) if self.responses else DEFAULT_RESPONSE
        if isinstance(response, Exception):
            raise response
        return response

    async def generate_text_stream(self, prompt: str, options: GenerationOptions | None = None) -> AsyncIterator[str]:
        yield await self.generate_text(prompt, options)

    async def generate_with_tools(
        self, prompt: str, tools: list[ToolDefinition], options: GenerationOptions | None = None
    ) -> GenerationResult:
        self.prompts.append(prompt)
        self.options.append(options)
        self.tool_batches.append(tools)
        result = self.tool_results.pop(0) if self.tool_results else GenerationResult(text=DEFAULT_RESPONSE)
        if isinstance(result, Exception):
            raise result
        return result

    def create_context(self, options: ContextOptions | None = None) -> InMemoryModelContext:
        return InMemoryModelContext.from_options(
            self.name, self.capabilities.max_context_size, options, token_counter=self.token_counter
        )

    async def get_health(self) -> ModelHealth:
        return ModelHealth(status="healthy")


@pytest.fixture
def make_model():
    """Factory for scripted model adapters."""
    return FakeModel


@pytest.fixture
def native_capabilities():
    """Capabilities of a backend with built-in tool calling."""
    return ModelCapabilities(supports_tool_calling=True)


@pytest.fixture
def token_counter():
    """Character-based token counter (four characters per token)."""
    return TokenCounter(None)


@pytest.fixture
def invocations():
    """Record of (tool name, arguments) for every tool execution."""
    return []


@pytest.fixture
def echo_tool(invocations):
    """Tool that echoes its message argument."""

    async def echo(arguments, abort_signal):
        invocations.append(("echo", arguments))
        return {"echo": arguments["message"]}

    return FunctionTool(
        name="echo",
        description="Echo a message back",
        handler=echo,
        parameters=ToolParameters(
            properties={"message": ParameterSchema(type="string", description="Text to echo")},
            required=["message"],
        ),
    )


@pytest.fixture
def flaky_tool(invocations):
    """Tool that fails on its first invocation and succeeds afterwards."""

    async def flaky(arguments, abort_signal):
        invocations.append(("flaky", arguments))
        if sum(1 for name, _ in invocations if name == "flaky") == 1:
            raise RuntimeError("boom")
        return "recovered"

    return FunctionTool(name="flaky", description="Fails once", handler=flaky)


@pytest.fixture
def registry(echo_tool, flaky_tool):
    """Registry holding the echo and flaky tools."""
    return ToolRegistry([echo_tool, flaky_tool])
