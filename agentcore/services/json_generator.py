"""Bounded-retry JSON generation with repair and confidence scoring."""

import json
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from agentcore.clients.base import ModelAdapter
from agentcore.models.generation import JsonGenerationOptions, JsonGenerationResult, JsonStrategy, ModelJsonPerformance
from agentcore.models.llm import GenerationOptions
from agentcore.models.tools import ToolDefinition
from agentcore.services.json_repair import (
    JsonRepairParser,
    extract_from_result_pattern,
    extract_json_from_markdown,
    extract_key_value_pairs,
    find_json_pattern,
)
from agentcore.services.logit_bias import LogitBiasCalculator
from agentcore.utils.logging import get_logger

logger = get_logger(__name__)

JSON_INSTRUCTION = "\n\nRespond with valid JSON only."
STOP_SEQUENCES = ["\n\n", "```", "Human:", "Assistant:"]
DEFAULT_MAX_TOKENS = 2048
JSON_TEMPERATURE = 0.1
NATIVE_TOOL_CONFIDENCE = 0.95

GENERATION_FIELDS = set(GenerationOptions.model_fields) - {"abort_signal"}


@dataclass
class _Extraction:
    success: bool
    data: Any = None
    strategy: JsonStrategy | None = None
    error: str | None = None


def clean_json_text(text: str) -> str:
    """Strip fences and a ``json`` label, then collapse whitespace."""
    cleaned = text.strip()
    for prefix in ("```json", "```"):
        if cleaned.startswith(prefix):
            cleaned = cleaned[len(prefix) :].lstrip()
            break
    if cleaned.endswith("```"):
        cleaned = cleaned[:-3]
    cleaned = cleaned.strip()
    if cleaned.startswith("json"):
        cleaned = cleaned[4:]
    return " ".join(cleaned.split())


def canonical_json(data: Any) -> str:
    """Compact serialization used for confidence comparisons."""
    return json.dumps(data, separators=(",", ":"), ensure_ascii=False)


def calculate_confidence(raw_text: str, data: Any, attempts: int) -> float:
    """Score how trustworthy a recovered JSON value is.

    Args:
        raw_text: Model output the value came from
        data: Parsed value
        attempts: Attempts used, starting at 1

    Returns:
        Confidence in [0, 1]
    """
    confidence = max(0.3, 1.0 - 0.2 * (attempts - 1))
    serialized = canonical_json(data)
    if "```" in raw_text:
        confidence *= 0.9
    if len(raw_text) > len(serialized) * 3:
        confidence *= 0.8
    if clean_json_text(raw_text) == serialized:
        confidence *= 1.1
    return min(1.0, max(0.0, confidence))


def validate_against_schema(data: Any, schema: dict[str, Any]) -> bool:
    """Check the top-level type and required keys of a value."""
    expected = schema.get("type")
    if expected == "object" and not isinstance(data, dict):
        return False
    if expected == "array" and not isinstance(data, list):
        return False
    required = schema.get("required") or []
    if required and (not isinstance(data, dict) or any(key not in data for key in required)):
        return False
    return True


def embed_tools_in_prompt(prompt: str, tools: list[ToolDefinition]) -> str:
    """Append a textual tool catalog and the function_call response format."""
    descriptions = "\n".join(f"- {tool.name}: {tool.description or 'No description'}" for tool in tools)
    return (
        f"{prompt}\n\n"
        "Available functions:\n"
        f"{descriptions}\n\n"
        "To call a function, respond with JSON in this format:\n"
        "{\n"
        '  "function_call": {\n'
        '    "name": "function_name",\n'
        '    "arguments": {"arg1": "value1", "arg2": "value2"}\n'
        "  }\n"
        "}"
    )


class ReliableJsonGenerator:
    """Drives a model through bounded attempts until it yields JSON."""

    def __init__(
        self,
        repair_parser: JsonRepairParser | None = None,
        bias_calculator: LogitBiasCalculator | None = None,
    ):
        """Initialize generator.

        Args:
            repair_parser: Parser used by the ``repair`` fallback
            bias_calculator: Source of the logit bias sent with each request
        """
        self.repair_parser = repair_parser or JsonRepairParser()
        self.bias_calculator = bias_calculator or LogitBiasCalculator()
        self._performance: dict[str, ModelJsonPerformance] = {}

    async def generate_reliable_json(
        self, model: ModelAdapter, prompt: str, options: JsonGenerationOptions | None = None
    ) -> JsonGenerationResult:
        """Generate a JSON value, retrying and repairing as needed.

        Args:
            model: Backend to generate with
            prompt: Task prompt
            options: Retry, fallback, validation and generation options

        Returns:
            Structured result; failures are reported, never raised
        """
        options = options or JsonGenerationOptions()
        performance = self._performance_for(model.name)
        performance.attempts += 1

        errors: list[str] = []
        raw_text = ""
        attempts = 0

        while attempts < options.max_retries:
            if options.abort_signal is not None and options.abort_signal.aborted:
                errors.append(f"Aborted: {options.abort_signal.reason}")
                break
            attempts += 1

            try:
                response = await model.generate_text(
                    self.optimize_prompt(model, prompt, options), self.build_generation_options(model, options)
                )
            except Exception as e:
                logger.warning(f"Generation attempt {attempts} for {model.name} raised: {e}")
                errors.append(f"Generation error {attempts}: {e}")
                continue

            raw_text = response
            extraction = self._extract_and_validate(response, options)
            if extraction.success:
                return self._succeed(performance, response, extraction.data, attempts, extraction.strategy)
            errors.append(f"Attempt {attempts}: {extraction.error}")

            if attempts < options.max_retries:
                fallback = self._apply_fallback(options.fallback_strategy, response, options)
                if fallback.success:
                    return self._succeed(performance, response, fallback.data, attempts, fallback.strategy)
                errors.append(f"Fallback {attempts}: {fallback.error}")

        performance.failures += 1
        logger.warning(f"JSON generation failed for {model.name} after {attempts} attempts")
        return JsonGenerationResult(success=False, raw_text=raw_text, attempts=attempts, errors=errors, confidence=0.0)

    async def generate_json_with_tools(
        self,
        model: ModelAdapter,
        prompt: str,
        tools: list[ToolDefinition],
        options: JsonGenerationOptions | None = None,
    ) -> JsonGenerationResult:
        """Generate tool-call JSON, natively when the backend supports it.

        Native calls are wrapped as ``{"function_calls": [...]}``; otherwise the
        tool catalog is embedded in the prompt and the JSON pipeline runs.
        """
        options = options or JsonGenerationOptions()
        if not model.capabilities.supports_tool_calling:
            return await self.generate_reliable_json(model, embed_tools_in_prompt(prompt, tools), options)

        try:
            result = await model.generate_with_tools(prompt, tools, self._passthrough_options(options))
        except Exception as e:
            logger.warning(f"Native tool calling failed for {model.name}, embedding tools in prompt: {e}")
            return await self.generate_reliable_json(model, embed_tools_in_prompt(prompt, tools), options)

        if result.tool_calls:
            performance = self._performance_for(model.name)
            performance.attempts += 1
            performance.successes += 1
            data = {"function_calls": [{"name": call.name, "arguments": call.arguments} for call in result.tool_calls]}
            return JsonGenerationResult(
                success=True,
                data=data,
                raw_text=result.text,
                attempts=1,
                confidence=NATIVE_TOOL_CONFIDENCE,
                strategy="tool_calling",
            )

        return await self.generate_reliable_json(model, prompt, options)

    def optimize_prompt(self, model: ModelAdapter, prompt: str, options: JsonGenerationOptions) -> str:
        """Add JSON instructions tuned to the backend."""
        optimized = prompt
        if "JSON" not in prompt and "json" not in prompt:
            optimized += JSON_INSTRUCTION
        if not options.tune_for_backend:
            return optimized

        schema_text = json.dumps(options.json_schema, indent=2) if options.json_schema else None
        if model.backend == "ollama":
            optimized += "\n\nFormat your response as a JSON object with proper syntax."
            if schema_text:
                optimized += f"\n\nFollow this JSON schema:\n{schema_text}"
        elif model.backend == "huggingface":
            optimized += '\n\nExample JSON format: {"key": "value", "array": [1, 2, 3]}'
        elif model.backend == "cloud":
            if schema_text:
                optimized += f"\n\nGenerate a JSON response that validates against this schema:\n{schema_text}"
            else:
                optimized += "\n\nReturn a well-formed JSON object."
        return optimized

    def build_generation_options(self, model: ModelAdapter, options: JsonGenerationOptions) -> GenerationOptions:
        """Deterministic-leaning defaults overridden by explicitly set options."""
        base: dict[str, Any] = {
            "temperature": JSON_TEMPERATURE,
            "max_tokens": DEFAULT_MAX_TOKENS,
            "format": "json",
            "stop_sequences": list(STOP_SEQUENCES),
        }
        if options.bias_preset is not None:
            base["logit_bias"] = self.bias_calculator.generate_json_bias(
                self.bias_calculator.create_json_preset(options.bias_preset)
            )
        base.update(options.model_dump(include=GENERATION_FIELDS, exclude_unset=True, exclude_none=True))
        return GenerationOptions(**base, abort_signal=options.abort_signal)

    def get_model_performance_stats(self) -> dict[str, ModelJsonPerformance]:
        """Get a copy of per-model telemetry."""
        return {
            name: ModelJsonPerformance(
                model_name=name, attempts=perf.attempts, successes=perf.successes, failures=perf.failures
            )
            for name, perf in self._performance.items()
        }

    def reset_performance_tracking(self) -> None:
        """Forget all per-model telemetry."""
        self._performance.clear()

    def _extract_and_validate(self, text: str, options: JsonGenerationOptions) -> _Extraction:
        first_error: str | None = None
        steps: list[tuple[JsonStrategy, Callable[[str], Any]]] = [
            ("direct", lambda raw: json.loads(clean_json_text(raw))),
            ("markdown", extract_json_from_markdown),
            ("pattern", find_json_pattern),
        ]
        for strategy, step in steps:
            try:
                data = step(text)
            except json.JSONDecodeError as e:
                first_error = first_error or f"JSON parsing failed: {e}"
                continue
            if data is None:
                continue
            if options.strict_validation and options.json_schema and not validate_against_schema(
                data, options.json_schema
            ):
                first_error = first_error or f"Schema validation failed ({strategy})"
                continue
            return _Extraction(success=True, data=data, strategy=strategy)
        return _Extraction(success=False, error=first_error or "No JSON found in response")

    def _apply_fallback(self, strategy: str, response: str, options: JsonGenerationOptions) -> _Extraction:
        if strategy == "repair":
            repaired = self.repair_parser.repair(response)
            if repaired.success:
                return self._validated(repaired.data, "repair", options)
            return _Extraction(success=False, error=f"Repair failed: {'; '.join(repaired.errors)}")

        if strategy == "extract":
            for extractor in (
                extract_json_from_markdown,
                find_json_pattern,
                extract_key_value_pairs,
                extract_from_result_pattern,
            ):
                data = extractor(response)
                if data is not None:
                    return self._validated(data, "extract", options)
            return _Extraction(success=False, error="All extraction strategies failed")

        return _Extraction(success=False, error="Regenerate strategy not implemented in fallback")

    def _validated(self, data: Any, strategy: JsonStrategy, options: JsonGenerationOptions) -> _Extraction:
        if options.strict_validation and options.json_schema and not validate_against_schema(data, options.json_schema):
            return _Extraction(success=False, error=f"Schema validation failed ({strategy})")
        return _Extraction(success=True, data=data, strategy=strategy)

    def _succeed(
        self, performance: ModelJsonPerformance, raw_text: str, data: Any, attempts: int, strategy: JsonStrategy | None
    ) -> JsonGenerationResult:
        performance.successes += 1
        confidence = calculate_confidence(raw_text, data, attempts)
        logger.debug(f"JSON generated for {performance.model_name} via {strategy} (confidence {confidence:.2f})")
        return JsonGenerationResult(
            success=True, data=data, raw_text=raw_text, attempts=attempts, confidence=confidence, strategy=strategy
        )

    def _passthrough_options(self, options: JsonGenerationOptions) -> GenerationOptions:
        return GenerationOptions(
            **options.model_dump(include=GENERATION_FIELDS, exclude_unset=True, exclude_none=True),
            abort_signal=options.abort_signal,
        )

    def _performance_for(self, model_name: str) -> ModelJsonPerformance:
        if model_name not in self._performance:
            self._performance[model_name] = ModelJsonPerformance(model_name=model_name)
        return self._performance[model_name]
