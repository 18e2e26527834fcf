"""Tests for the generate / execute / feed-back loop."""

import asyncio

import pytest

from agentcore.clients.rate_limiter import ModelRateLimiter
from agentcore.clients.signals import AbortSignal
from agentcore.models.llm import GenerationResult, ModelCapabilities, RateLimits, Usage
from agentcore.models.session import FunctionCallingConfig
from agentcore.models.tools import ToolCall, ToolResult
from agentcore.services.execution_engine import ToolExecutionEngine
from agentcore.services.function_calling import (
    CONTINUE_INSTRUCTION,
    FINAL_INSTRUCTION,
    EnhancedFunctionCalling,
    calls_from_json,
    render_prompt,
    should_stop_iteration,
)
from agentcore.tools.base import FunctionTool

XML_ECHO = (
    "<function_calls>\n"
    '<invoke name="echo">\n'
    '<parameter name="message">hi</parameter>\n'
    "</invoke>\n"
    "</function_calls>"
)


def echo_call(message="hi"):
    return ToolCall(name="echo", arguments={"message": message})


def calls_result(*calls, text=""):
    return GenerationResult(text=text, tool_calls=list(calls), finish_reason="tool_calls")


@pytest.fixture
def function_calling(registry, token_counter):
    return EnhancedFunctionCalling(ToolExecutionEngine(registry), token_counter=token_counter)


@pytest.fixture
def config():
    return FunctionCallingConfig(retry_delay=0)


@pytest.fixture
def tools(registry):
    return registry.get_definitions()


class TestNativeToolCalling:
    """Tests for backends with built-in tool calling."""

    @pytest.mark.asyncio
    async def test_calls_then_answers(
        self, function_calling, config, tools, make_model, native_capabilities, invocations
    ):
        model = make_model(
            capabilities=native_capabilities,
            tool_results=[calls_result(echo_call()), GenerationResult(text="The echo said hi")],
        )

        result = await function_calling.execute_with_functions(model, "Echo hi", tools, config)

        assert result.success
        assert result.final_response == "The echo said hi"
        assert result.iterations == 2
        assert result.strategy == "native"
        assert result.confidence == pytest.approx(0.95)
        assert invocations == [("echo", {"message": "hi"})]
        assert [r.result for r in result.results] == [{"echo": "hi"}]
        assert result.usage.total_tokens > 0

    @pytest.mark.asyncio
    async def test_results_are_fed_back(self, function_calling, config, tools, make_model, native_capabilities):
        """Test that the next prompt carries rendered results and the continuation instruction."""
        model = make_model(
            capabilities=native_capabilities,
            tool_results=[calls_result(echo_call()), GenerationResult(text="Answer")],
        )

        await function_calling.execute_with_functions(model, "Echo hi", tools, config)

        assert model.prompts[0] == "Echo hi"
        assert '<tool_result name="echo"' in model.prompts[1]
        assert CONTINUE_INSTRUCTION in model.prompts[1]

    @pytest.mark.asyncio
    async def test_reported_usage_is_accumulated(self, function_calling, config, tools, make_model):
        model = make_model(
            capabilities=ModelCapabilities(supports_tool_calling=True),
            tool_results=[GenerationResult(text="Answer", usage=Usage(10, 5, 15))],
        )

        result = await function_calling.execute_with_functions(model, "Question", tools, config)

        assert (result.usage.prompt_tokens, result.usage.completion_tokens, result.usage.total_tokens) == (10, 5, 15)

    @pytest.mark.asyncio
    async def test_native_failure_uses_json_generation(self, function_calling, config, tools, make_model):
        model = make_model(
            capabilities=ModelCapabilities(supports_tool_calling=True),
            tool_results=[RuntimeError("tool calling unavailable")],
            responses=['{"response": "Plain answer"}'],
        )

        result = await function_calling.execute_with_functions(model, "Question", tools, config)

        assert result.success
        assert result.final_response == "Plain answer"


class TestStructuredFallbacks:
    """Tests for backends without native tool calling."""

    @pytest.mark.asyncio
    async def test_json_function_call(self, function_calling, config, tools, make_model, invocations):
        model = make_model(
            responses=[
                '{"function_call": {"name": "echo", "arguments": {"message": "hi"}}}',
                '{"response": "Echoed hi"}',
            ]
        )

        result = await function_calling.execute_with_functions(model, "Echo hi", tools, config)

        assert result.success
        assert result.strategy == "json"
        assert result.final_response == "Echoed hi"
        assert invocations == [("echo", {"message": "hi"})]
        assert "Available functions:" in model.prompts[0]

    @pytest.mark.asyncio
    async def test_dialect_text_fallback(self, function_calling, config, tools, make_model, invocations):
        """Test that tag-delimited calls are parsed once JSON generation gives up."""
        model = make_model(responses=[XML_ECHO, XML_ECHO, XML_ECHO, '{"response": "All set"}'])

        result = await function_calling.execute_with_functions(model, "Echo hi", tools, config)

        assert result.success
        assert result.strategy == "text"
        assert result.confidence == pytest.approx(0.5)
        assert result.final_response == "All set"
        assert invocations == [("echo", {"message": "hi"})]

    @pytest.mark.asyncio
    async def test_plain_text_answer(self, function_calling, config, tools, make_model, invocations):
        answer = "The capital of France is Paris."
        model = make_model(responses=[answer, answer, answer])

        result = await function_calling.execute_with_functions(model, "Capital of France?", tools, config)

        assert result.success
        assert result.final_response == answer
        assert result.confidence == pytest.approx(0.3)
        assert result.function_calls == []
        assert invocations == []

    @pytest.mark.asyncio
    async def test_text_fallback_disabled(self, function_calling, tools, make_model, invocations):
        model = make_model(responses=[XML_ECHO, XML_ECHO, XML_ECHO])
        config = FunctionCallingConfig(fallback_to_text=False, retry_delay=0)

        result = await function_calling.execute_with_functions(model, "Echo hi", tools, config)

        assert result.final_response == XML_ECHO
        assert invocations == []


class TestRetriesAndStopping:
    """Tests for per-call retries, stop conditions and confidence."""

    @pytest.mark.asyncio
    async def test_failed_call_is_retried(self, function_calling, config, tools, make_model, native_capabilities):
        model = make_model(
            capabilities=native_capabilities,
            tool_results=[calls_result(ToolCall(name="flaky")), GenerationResult(text="Recovered")],
        )

        result = await function_calling.execute_with_functions(model, "Try it", tools, config)

        assert result.errors == []
        assert [r.result for r in result.results] == ["recovered"]
        assert result.confidence == pytest.approx(0.95)

    @pytest.mark.asyncio
    async def test_all_failed_batch_stops_early(self, function_calling, tools, make_model, native_capabilities):
        """Test that a fully failed batch ends the loop and asks for a final answer."""
        model = make_model(
            capabilities=native_capabilities,
            tool_results=[calls_result(ToolCall(name="flaky"))],
            responses=["Summary answer"],
        )
        config = FunctionCallingConfig(retry_failed_calls=False, retry_delay=0)

        result = await function_calling.execute_with_functions(model, "Try it", tools, config)

        assert result.success
        assert result.iterations == 1
        assert result.final_response == "Summary answer"
        assert result.errors == ["Tool flaky failed: boom"]
        assert result.confidence == pytest.approx(0.95 * 0.9)
        assert FINAL_INSTRUCTION in model.prompts[-1]

    @pytest.mark.asyncio
    async def test_validation_failures_are_not_retried(
        self, function_calling, config, tools, make_model, native_capabilities, invocations
    ):
        model = make_model(
            capabilities=native_capabilities,
            tool_results=[calls_result(ToolCall(name="echo", arguments={}))],
            responses=["Could not echo"],
        )

        result = await function_calling.execute_with_functions(model, "Echo", tools, config)

        assert len(result.results) == 1
        assert result.results[0].error.startswith("Validation failed: ")
        assert invocations == []

    @pytest.mark.asyncio
    async def test_conclusion_phrase_stops(self, function_calling, config, tools, make_model, native_capabilities):
        model = make_model(
            capabilities=native_capabilities,
            tool_results=[calls_result(echo_call(), text="Last step, then I am done")],
            responses=["Final"],
        )

        result = await function_calling.execute_with_functions(model, "Echo hi", tools, config)

        assert result.iterations == 1
        assert result.final_response == "Final"
        assert result.confidence == pytest.approx(0.95)

    @pytest.mark.asyncio
    async def test_max_iterations(self, function_calling, tools, make_model, native_capabilities, invocations):
        """Test that the iteration cap produces a final answer with reduced confidence."""
        model = make_model(
            capabilities=native_capabilities,
            tool_results=[calls_result(echo_call("one")), calls_result(echo_call("two")), calls_result(echo_call())],
            responses=["Final"],
        )
        config = FunctionCallingConfig(max_iterations=2, retry_delay=0)

        result = await function_calling.execute_with_functions(model, "Echo forever", tools, config)

        assert result.iterations == 2
        assert len(invocations) == 2
        assert result.final_response == "Final"
        assert result.confidence == pytest.approx(0.95 * 0.8)

    @pytest.mark.asyncio
    async def test_final_response_failure(self, function_calling, tools, make_model, native_capabilities):
        model = make_model(
            capabilities=native_capabilities,
            tool_results=[calls_result(echo_call())],
            responses=[RuntimeError("backend down"), RuntimeError("backend down")],
        )
        config = FunctionCallingConfig(max_iterations=1, retry_delay=0)

        result = await function_calling.execute_with_functions(model, "Echo hi", tools, config)

        assert result.final_response == "Unable to generate final response: backend down"
        assert "Final response failed: backend down" in result.errors

    @pytest.mark.asyncio
    async def test_sequential_mode_when_parallel_disabled(
        self, function_calling, tools, make_model, native_capabilities
    ):
        model = make_model(
            capabilities=native_capabilities,
            tool_results=[calls_result(echo_call("a"), echo_call("b")), GenerationResult(text="Both echoed")],
        )
        config = FunctionCallingConfig(allow_parallel_calls=False, retry_delay=0)

        result = await function_calling.execute_with_functions(model, "Echo twice", tools, config)

        assert [r.result for r in result.results] == [{"echo": "a"}, {"echo": "b"}]

    @pytest.mark.asyncio
    async def test_sequential_retry_happens_before_next_call(
        self, function_calling, tools, make_model, native_capabilities, invocations
    ):
        """Test that a failed call is retried before the following call in the batch runs."""
        model = make_model(
            capabilities=native_capabilities,
            tool_results=[calls_result(ToolCall(name="flaky"), echo_call()), GenerationResult(text="Done")],
        )
        config = FunctionCallingConfig(allow_parallel_calls=False, retry_delay=0)

        result = await function_calling.execute_with_functions(model, "Try then echo", tools, config)

        assert invocations == [("flaky", {}), ("flaky", {}), ("echo", {"message": "hi"})]
        assert [r.result for r in result.results] == ["recovered", {"echo": "hi"}]

    @pytest.mark.asyncio
    async def test_skipped_calls_are_not_reported(
        self, registry, token_counter, make_model, native_capabilities, invocations
    ):
        """Test that calls skipped after a critical error are left out of function_calls."""

        async def guarded(arguments, abort_signal):
            invocations.append(("guarded", arguments))
            raise PermissionError("Permission denied for /etc")

        registry.register_tool(FunctionTool(name="guarded", description="Always refuses", handler=guarded))
        function_calling = EnhancedFunctionCalling(ToolExecutionEngine(registry), token_counter=token_counter)
        model = make_model(
            capabilities=native_capabilities,
            tool_results=[calls_result(ToolCall(name="guarded"), echo_call())],
            responses=["Stopped"],
        )
        config = FunctionCallingConfig(allow_parallel_calls=False, retry_delay=0)

        result = await function_calling.execute_with_functions(
            model, "Try both", registry.get_definitions(), config
        )

        assert invocations == [("guarded", {})]
        assert [call.name for call in result.function_calls] == ["guarded"]
        assert [r.name for r in result.results] == ["guarded"]


class TestLimits:
    """Tests for timeout, cancellation and rate limits."""

    @pytest.mark.asyncio
    async def test_timeout(self, function_calling, tools, make_model, native_capabilities):
        model = make_model(capabilities=native_capabilities)

        async def hang(prompt, tools, options=None):
            await asyncio.sleep(5)

        model.generate_with_tools = hang
        config = FunctionCallingConfig(timeout=0.05)

        result = await function_calling.execute_with_functions(model, "Hello", tools, config)

        assert not result.success
        assert result.errors == ["Function calling timed out after 0.05s"]

    @pytest.mark.asyncio
    async def test_aborted_signal(self, function_calling, config, tools, make_model):
        signal = AbortSignal()
        signal.abort("user cancelled")
        model = make_model()

        result = await function_calling.execute_with_functions(model, "Hello", tools, config, abort_signal=signal)

        assert not result.success
        assert "Function calling aborted: user cancelled" in result.errors
        assert model.prompts == []

    @pytest.mark.asyncio
    async def test_signal_reaches_tools(self, registry, token_counter, config, make_model, native_capabilities):
        """Test that tools receive a signal linked to the caller's."""
        received = []

        async def capture(arguments, abort_signal):
            received.append(abort_signal)
            return "ok"

        registry.register_tool(FunctionTool(name="capture", description="Capture the signal", handler=capture))
        function_calling = EnhancedFunctionCalling(ToolExecutionEngine(registry), token_counter=token_counter)
        model = make_model(
            capabilities=native_capabilities,
            tool_results=[calls_result(ToolCall(name="capture")), GenerationResult(text="Captured")],
        )
        caller_signal = AbortSignal()

        await function_calling.execute_with_functions(
            model, "Capture", registry.get_definitions(), config, abort_signal=caller_signal
        )
        caller_signal.abort("late")

        assert received[0].aborted
        assert received[0].reason == "late"

    @pytest.mark.asyncio
    async def test_rate_limit_exceeded(self, registry, token_counter, config, tools, make_model):
        function_calling = EnhancedFunctionCalling(
            ToolExecutionEngine(registry), rate_limiter=ModelRateLimiter(max_wait=0), token_counter=token_counter
        )
        model = make_model(
            capabilities=ModelCapabilities(supports_tool_calling=True, rate_limits=RateLimits(requests_per_minute=1)),
            tool_results=[calls_result(echo_call()), GenerationResult(text="Answer")],
        )

        result = await function_calling.execute_with_functions(model, "Echo hi", tools, config)

        assert not result.success
        assert "Request rate limit" in result.errors[-1]
        assert len(result.function_calls) == 1

    @pytest.mark.asyncio
    async def test_context_is_managed_per_model(self, function_calling, config, tools, make_model):
        model = make_model(responses=['{"response": "Hi"}'])

        await function_calling.execute_with_functions(model, "Hello", tools, config)

        metrics = function_calling.context_managers.get_all_metrics()["fake-model"]
        assert metrics.total_operations == 1


class TestHelpers:
    """Tests for loop helpers."""

    def test_should_stop_on_conclusion_phrase(self):
        assert should_stop_iteration("That's all for now", [])
        assert not should_stop_iteration("Working on it", [])

    def test_should_stop_when_every_result_failed(self):
        failed = ToolResult(id="1", name="x", error="boom", is_error=True)
        ok = ToolResult(id="2", name="x", result=1)

        assert should_stop_iteration("", [failed])
        assert not should_stop_iteration("", [failed, ok])

    def test_calls_from_json(self):
        calls = calls_from_json(
            {"function_calls": [{"name": "a", "arguments": {"x": 1}}, {"name": "", "arguments": {}}, "junk"]}
        )

        assert [(call.name, call.arguments) for call in calls] == [("a", {"x": 1})]
        assert calls_from_json(["not", "an", "object"]) == []

    def test_render_prompt(self, make_model):
        context = make_model().create_context()
        context.add_message("user", "Hello")

        assert render_prompt(context.get_messages()) == "Hello"

        context.add_message("assistant", "Hi there")
        assert render_prompt(context.get_messages()) == "User: Hello\n\nAssistant: Hi there"
