"""Tests for reliable JSON generation."""

import pytest

from agentcore.clients.signals import AbortSignal
from agentcore.models.generation import JsonGenerationOptions
from agentcore.models.llm import GenerationResult, ModelCapabilities
from agentcore.models.tools import ToolCall
from agentcore.services.json_generator import ReliableJsonGenerator, calculate_confidence, clean_json_text


@pytest.fixture
def generator():
    return ReliableJsonGenerator()


class TestGenerateReliableJson:
    """Tests for the bounded attempt loop."""

    @pytest.mark.asyncio
    async def test_direct_json(self, generator, make_model):
        """Test that clean JSON succeeds on the first attempt with full confidence."""
        model = make_model(responses=['{"name":"Alice"}'])

        result = await generator.generate_reliable_json(model, "Describe Alice")

        assert result.success
        assert result.data == {"name": "Alice"}
        assert result.attempts == 1
        assert result.strategy == "direct"
        assert result.confidence == 1.0

    @pytest.mark.asyncio
    async def test_markdown_extraction_lowers_confidence(self, generator, make_model):
        """Test that fenced, verbose output is accepted with reduced confidence."""
        model = make_model(responses=['Here you go:\n```json\n{"a": 1}\n```'])

        result = await generator.generate_reliable_json(model, "Give me data")

        assert result.success
        assert result.strategy == "markdown"
        assert result.confidence == pytest.approx(0.72)

    @pytest.mark.asyncio
    async def test_pattern_extraction(self, generator, make_model):
        """Test extraction of an object embedded in prose."""
        model = make_model(responses=['The result is {"a": 1} as requested'])

        result = await generator.generate_reliable_json(model, "Give me data")

        assert result.data == {"a": 1}
        assert result.strategy == "pattern"

    @pytest.mark.asyncio
    async def test_retry_discounts_confidence(self, generator, make_model):
        """Test that a second attempt succeeds with a retry discount."""
        model = make_model(responses=["nonsense", '{"a": 1}'])

        result = await generator.generate_reliable_json(model, "Give me data")

        assert result.success
        assert result.attempts == 2
        assert result.confidence == pytest.approx(0.8)
        assert len(model.prompts) == 2

    @pytest.mark.asyncio
    async def test_repair_fallback(self, generator, make_model):
        """Test that the repair fallback recovers malformed JSON."""
        model = make_model(responses=["{'a': 1,}"])

        result = await generator.generate_reliable_json(model, "Give me data")

        assert result.success
        assert result.data == {"a": 1}
        assert result.strategy == "repair"
        assert result.attempts == 1

    @pytest.mark.asyncio
    async def test_extract_fallback(self, generator, make_model):
        """Test that the extract fallback reads key/value lines."""
        model = make_model(responses=["name: Alice\nage: 30"])

        result = await generator.generate_reliable_json(
            model, "Give me data", JsonGenerationOptions(fallback_strategy="extract")
        )

        assert result.data == {"name": "Alice", "age": 30}
        assert result.strategy == "extract"

    @pytest.mark.asyncio
    async def test_single_attempt_skips_fallback(self, generator, make_model):
        """Test that no fallback runs when no further attempt is allowed."""
        model = make_model(responses=["{'a': 1,}"])

        result = await generator.generate_reliable_json(model, "Give me data", JsonGenerationOptions(max_retries=1))

        assert not result.success
        assert result.confidence == 0.0
        assert result.raw_text == "{'a': 1,}"

    @pytest.mark.asyncio
    async def test_exhausted_attempts(self, generator, make_model):
        """Test that failure is reported with every error and the last raw text."""
        model = make_model(responses=["no json here", "still none", "nothing"])

        result = await generator.generate_reliable_json(model, "Give me data")

        assert not result.success
        assert result.attempts == 3
        assert result.raw_text == "nothing"
        assert result.errors
        assert generator.get_model_performance_stats()["fake-model"].failures == 1

    @pytest.mark.asyncio
    async def test_generation_errors_are_recorded(self, generator, make_model):
        """Test that a raising backend consumes an attempt instead of escaping."""
        model = make_model(responses=[RuntimeError("backend down"), '{"a": 1}'])

        result = await generator.generate_reliable_json(model, "Give me data")

        assert result.success
        assert result.attempts == 2

    @pytest.mark.asyncio
    async def test_strict_schema_validation(self, generator, make_model):
        """Test that values missing required keys are rejected."""
        schema = {"type": "object", "required": ["name"]}
        options = JsonGenerationOptions(strict_validation=True, json_schema=schema, max_retries=2)
        model = make_model(responses=['{"a": 1}', '{"name": "Alice"}'])

        result = await generator.generate_reliable_json(model, "Give me data", options)

        assert result.success
        assert result.attempts == 2
        assert result.data == {"name": "Alice"}

    @pytest.mark.asyncio
    async def test_aborted_before_start(self, generator, make_model):
        """Test that an aborted signal prevents any generation."""
        signal = AbortSignal()
        signal.abort("user cancelled")
        model = make_model()

        options = JsonGenerationOptions(abort_signal=signal)

        result = await generator.generate_reliable_json(model, "Give me data", options)

        assert not result.success
        assert model.prompts == []
        assert "Aborted: user cancelled" in result.errors


class TestGenerationOptions:
    """Tests for prompt and request shaping."""

    def test_build_options_defaults(self, generator, make_model):
        """Test deterministic defaults with the preset logit bias attached."""
        options = generator.build_generation_options(make_model(), JsonGenerationOptions())

        assert options.temperature == 0.1
        assert options.format == "json"
        assert options.logit_bias
        assert all(-100 <= value <= 100 for value in options.logit_bias.values())

    def test_explicit_options_override_defaults(self, generator, make_model):
        """Test that explicitly set fields win."""
        signal = AbortSignal()
        options = generator.build_generation_options(
            make_model(), JsonGenerationOptions(temperature=0.7, bias_preset=None, abort_signal=signal)
        )

        assert options.temperature == 0.7
        assert options.logit_bias is None
        assert options.abort_signal is signal

    def test_optimize_prompt_for_ollama(self, generator, make_model):
        """Test that local backends receive the schema."""
        prompt = generator.optimize_prompt(
            make_model(backend="ollama"), "Describe Alice", JsonGenerationOptions(json_schema={"type": "object"})
        )

        assert "Respond with valid JSON only." in prompt
        assert "Follow this JSON schema" in prompt

    def test_optimize_prompt_keeps_existing_instruction(self, generator, make_model):
        """Test that prompts already asking for JSON are not repeated."""
        prompt = generator.optimize_prompt(
            make_model(), "Return JSON", JsonGenerationOptions(tune_for_backend=False)
        )

        assert prompt == "Return JSON"


class TestGenerateJsonWithTools:
    """Tests for tool-aware generation."""

    @pytest.mark.asyncio
    async def test_native_tool_calls(self, generator, make_model, echo_tool):
        """Test that native calls are wrapped as a function_calls envelope."""
        model = make_model(
            capabilities=ModelCapabilities(supports_tool_calling=True),
            tool_results=[GenerationResult(text="", tool_calls=[ToolCall(name="echo", arguments={"message": "hi"})])],
        )

        result = await generator.generate_json_with_tools(model, "Say hi", [echo_tool.schema])

        assert result.success
        assert result.strategy == "tool_calling"
        assert result.confidence == 0.95
        assert result.data == {"function_calls": [{"name": "echo", "arguments": {"message": "hi"}}]}

    @pytest.mark.asyncio
    async def test_embedded_catalog(self, generator, make_model, echo_tool):
        """Test that non-native backends see the tool catalog in the prompt."""
        model = make_model(responses=['{"function_call": {"name": "echo", "arguments": {"message": "hi"}}}'])

        result = await generator.generate_json_with_tools(model, "Say hi", [echo_tool.schema])

        assert result.success
        assert "Available functions:" in model.prompts[0]
        assert "- echo: Echo a message back" in model.prompts[0]

    @pytest.mark.asyncio
    async def test_native_failure_falls_back(self, generator, make_model, echo_tool):
        """Test that a raising native path falls back to the embedded catalog."""
        model = make_model(
            capabilities=ModelCapabilities(supports_tool_calling=True),
            tool_results=[RuntimeError("tools unsupported")],
            responses=['{"function_call": {"name": "echo", "arguments": {"message": "hi"}}}'],
        )

        result = await generator.generate_json_with_tools(model, "Say hi", [echo_tool.schema])

        assert result.success
        assert result.data["function_call"]["name"] == "echo"


class TestPerformanceTracking:
    """Tests for per-model telemetry."""

    @pytest.mark.asyncio
    async def test_stats_and_reset(self, generator, make_model):
        """Test counting, copying and resetting of telemetry."""
        model = make_model(responses=['{"a": 1}', "x", "y", "z"])
        await generator.generate_reliable_json(model, "first")
        await generator.generate_reliable_json(model, "second")

        stats = generator.get_model_performance_stats()["fake-model"]
        assert (stats.attempts, stats.successes, stats.failures) == (2, 1, 1)
        assert stats.success_rate == 0.5

        stats.attempts = 100
        assert generator.get_model_performance_stats()["fake-model"].attempts == 2

        generator.reset_performance_tracking()
        assert generator.get_model_performance_stats() == {}


class TestConfidence:
    """Tests for the confidence heuristic."""

    def test_floor_after_many_attempts(self):
        """Test that the retry discount never drops below 0.3."""
        assert calculate_confidence('{"a": 1}', {"a": 1}, 10) == pytest.approx(0.3)

    def test_clean_json_text(self):
        """Test stripping of fences and the json label."""
        assert clean_json_text('```json\n{"a":\n 1}\n```') == '{"a": 1}'
