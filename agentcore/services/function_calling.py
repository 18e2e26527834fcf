"""Bounded generate / execute / feed-back loop over a managed context."""

import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from agentcore.clients.base import ModelAdapter, ModelContext
from agentcore.clients.rate_limiter import ModelRateLimiter
from agentcore.clients.signals import AbortSignal
from agentcore.errors import ToolTimeoutError
from agentcore.models.execution import ExecutionContext
from agentcore.models.generation import JsonGenerationOptions
from agentcore.models.llm import ContextOptions, GenerationOptions, Usage
from agentcore.models.session import CallingStrategy, FunctionCallingConfig, FunctionCallingResult
from agentcore.models.tools import ToolCall, ToolDefinition, ToolResult
from agentcore.services.context_manager import ContextManagerFactory, SmartContextManager
from agentcore.services.execution_engine import ToolExecutionEngine, is_retryable_failure
from agentcore.services.json_generator import ReliableJsonGenerator, embed_tools_in_prompt
from agentcore.services.tool_protocol import UniversalToolInterface
from agentcore.utils.ids import generate_session_id
from agentcore.utils.logging import get_logger
from agentcore.utils.resilience import RetryPolicy, with_retry, with_timeout
from agentcore.utils.tokens import TokenCounter

logger = get_logger(__name__)

NATIVE_CONFIDENCE = 0.95
TEXT_CALL_CONFIDENCE = 0.5
TEXT_ONLY_CONFIDENCE = 0.3
ERROR_CONFIDENCE_FACTOR = 0.9
MAX_ITERATIONS_CONFIDENCE_FACTOR = 0.8
FINAL_RESPONSE_TEMPERATURE = 0.3
FINAL_RESPONSE_MAX_TOKENS = 1000

CONCLUSION_PHRASES = ("final answer", "conclusion", "complete", "finished", "done", "no more", "that's all")
CONTINUE_INSTRUCTION = (
    "Based on the function call results above, provide your final response or make additional function calls "
    "if needed."
)
FINAL_INSTRUCTION = (
    "Please provide a final comprehensive response based on all the function calls and their results. "
    "Do not make any additional function calls."
)

FUNCTION_CALL_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "function_call": {
            "type": "object",
            "properties": {"name": {"type": "string"}, "arguments": {"type": "object"}},
            "required": ["name", "arguments"],
        },
        "response": {"type": "string"},
    },
}


@dataclass
class _Generation:
    text: str
    tool_calls: list[ToolCall]
    confidence: float
    strategy: CallingStrategy
    usage: Usage


@dataclass
class _LoopState:
    calls: list[ToolCall] = field(default_factory=list)
    results: list[ToolResult] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    usage: Usage = field(default_factory=Usage)
    iterations: int = 0
    confidence: float = 1.0
    strategy: CallingStrategy | None = None


def should_stop_iteration(last_response: str, last_results: list[ToolResult]) -> bool:
    """Stop on a conclusion phrase or when every result of the last batch failed."""
    lowered = last_response.lower()
    if any(phrase in lowered for phrase in CONCLUSION_PHRASES):
        return True
    return bool(last_results) and all(result.is_error for result in last_results)


def calls_from_json(data: Any) -> list[ToolCall]:
    """Read ``function_call`` / ``function_calls`` envelopes from generated JSON."""
    if not isinstance(data, dict):
        return []
    raw_calls = []
    if isinstance(data.get("function_call"), dict):
        raw_calls.append(data["function_call"])
    if isinstance(data.get("function_calls"), list):
        raw_calls.extend(call for call in data["function_calls"] if isinstance(call, dict))

    calls = []
    for raw in raw_calls:
        name = raw.get("name")
        arguments = raw.get("arguments") or {}
        if isinstance(name, str) and name and isinstance(arguments, dict):
            calls.append(ToolCall(name=name, arguments=arguments, description=f"Function call: {name}", format="json"))
    return calls


def render_prompt(messages: list[Any]) -> str:
    """Render a context as a single prompt."""
    if len(messages) == 1:
        return messages[0].content
    return "\n\n".join(f"{message.role.capitalize()}: {message.content}" for message in messages)


class EnhancedFunctionCalling:
    """Runs the tool-calling loop for one prompt."""

    def __init__(
        self,
        engine: ToolExecutionEngine,
        json_generator: ReliableJsonGenerator | None = None,
        tool_interface: UniversalToolInterface | None = None,
        context_managers: ContextManagerFactory | None = None,
        rate_limiter: ModelRateLimiter | None = None,
        token_counter: TokenCounter | None = None,
    ):
        """Initialize function calling.

        Args:
            engine: Executes and audits tool calls
            json_generator: Structured-output path for models without native tool calling
            tool_interface: Parses dialect text when JSON generation fails
            context_managers: Supplies the context manager per model
            rate_limiter: Enforces per-model throughput limits before each generation
            token_counter: Token estimator for contexts and usage estimates
        """
        self.engine = engine
        self.json_generator = json_generator or ReliableJsonGenerator()
        self.tool_interface = tool_interface or UniversalToolInterface()
        self.token_counter = token_counter or TokenCounter()
        self.context_managers = context_managers or ContextManagerFactory(self.token_counter)
        self.rate_limiter = rate_limiter or ModelRateLimiter()

    async def execute_with_functions(
        self,
        model: ModelAdapter,
        prompt: str,
        tools: list[ToolDefinition],
        config: FunctionCallingConfig | None = None,
        session_id: str | None = None,
        abort_signal: AbortSignal | None = None,
    ) -> FunctionCallingResult:
        """Let the model call tools until it answers or the iteration budget runs out.

        Args:
            model: Backend to drive
            prompt: User prompt
            tools: Definitions exposed to the model
            config: Loop controls
            session_id: Audit-log session for tool executions
            abort_signal: Cooperative cancellation shared with backends and tools

        Returns:
            Structured result; failures are reported, never raised
        """
        config = config or FunctionCallingConfig()
        signal = abort_signal.child() if abort_signal is not None else AbortSignal()
        state = _LoopState()
        execution_context = ExecutionContext(
            session_id=session_id or generate_session_id(),
            security_config=config.security,
            abort_signal=signal,
        )

        logger.info(
            f"Starting function calling for {model.name} with {len(tools)} tools, "
            f"max_iterations: {config.max_iterations}"
        )
        try:
            final_response = await with_timeout(
                lambda: self._run_loop(model, prompt, tools, config, execution_context, state),
                config.timeout,
                signal,
            )
        except ToolTimeoutError:
            logger.warning(f"Function calling for {model.name} timed out after {config.timeout}s")
            return self._failure(state, f"Function calling timed out after {config.timeout}s")
        except Exception as e:
            logger.exception(f"Function calling for {model.name} failed")
            return self._failure(state, str(e) or type(e).__name__)

        return FunctionCallingResult(
            success=True,
            final_response=final_response,
            function_calls=state.calls,
            results=state.results,
            iterations=state.iterations,
            confidence=min(1.0, max(0.0, state.confidence)),
            errors=state.errors,
            strategy=state.strategy,
            usage=state.usage,
        )

    def get_performance_stats(self):
        """JSON generation telemetry per model."""
        return self.json_generator.get_model_performance_stats()

    def reset_performance_tracking(self) -> None:
        self.json_generator.reset_performance_tracking()

    async def _run_loop(
        self,
        model: ModelAdapter,
        prompt: str,
        tools: list[ToolDefinition],
        config: FunctionCallingConfig,
        execution_context: ExecutionContext,
        state: _LoopState,
    ) -> str:
        signal = execution_context.abort_signal
        context = model.create_context(ContextOptions(context_size=model.capabilities.max_context_size))
        context.add_message("user", prompt)
        manager = self._context_manager(model, config)
        self.rate_limiter.configure(model.name, model.capabilities.rate_limits)
        stopped_early = False

        while state.iterations < config.max_iterations:
            if signal.aborted:
                raise RuntimeError(f"Function calling aborted: {signal.reason}")
            state.iterations += 1
            logger.debug(f"Function calling iteration {state.iterations}/{config.max_iterations}")

            await manager.manage_context(context)
            current_prompt = render_prompt(context.get_messages())
            await self.rate_limiter.check_rate_limit(model.name, self.token_counter.count(current_prompt))

            generation = await self._generate(model, current_prompt, tools, config, signal)
            self._add_usage(state, generation.usage)
            state.confidence = min(state.confidence, generation.confidence)

            if not generation.tool_calls:
                context.add_message("assistant", generation.text)
                logger.info(f"Function calling completed in {state.iterations} iterations")
                return generation.text

            state.strategy = generation.strategy
            logger.info(f"{model.name} requested {len(generation.tool_calls)} tool calls via {generation.strategy}")
            results = await self._execute_calls(generation.tool_calls, execution_context, config)
            executed = {result.id for result in results}
            state.calls.extend(call for call in generation.tool_calls if call.id in executed)
            state.results.extend(results)

            failures = [result for result in results if result.is_error]
            if failures:
                state.errors.extend(f"Tool {result.name} failed: {result.error}" for result in failures)
                state.confidence *= ERROR_CONFIDENCE_FACTOR

            self._feed_back(context, model, generation, results)

            if should_stop_iteration(generation.text, results):
                stopped_early = True
                break

        if not stopped_early:
            logger.warning(f"Function calling reached max iterations ({config.max_iterations})")
            state.confidence *= MAX_ITERATIONS_CONFIDENCE_FACTOR

        return await self._generate_final_response(model, context, config, state, signal)

    async def _generate(
        self,
        model: ModelAdapter,
        prompt: str,
        tools: list[ToolDefinition],
        config: FunctionCallingConfig,
        signal: AbortSignal,
    ) -> _Generation:
        if model.capabilities.supports_tool_calling:
            try:
                result = await model.generate_with_tools(prompt, tools, GenerationOptions(abort_signal=signal))
            except Exception as e:
                logger.warning(f"Native tool calling failed for {model.name}, using JSON generation: {e}")
            else:
                usage = result.usage or self._estimate_usage(prompt, result.text)
                return _Generation(result.text, list(result.tool_calls or []), NATIVE_CONFIDENCE, "native", usage)

        json_result = await self.json_generator.generate_reliable_json(
            model,
            embed_tools_in_prompt(prompt, tools),
            JsonGenerationOptions(json_schema=FUNCTION_CALL_SCHEMA, abort_signal=signal),
        )
        usage = self._estimate_usage(prompt, json_result.raw_text)

        if json_result.success:
            calls = calls_from_json(json_result.data)
            text = json_result.raw_text
            if isinstance(json_result.data, dict) and isinstance(json_result.data.get("response"), str):
                text = json_result.data["response"]
            return _Generation(text, calls, json_result.confidence, "json", usage)

        if not json_result.raw_text:
            raise RuntimeError(f"Model produced no output: {'; '.join(json_result.errors)}")

        calls = []
        if config.fallback_to_text:
            calls = self.tool_interface.parse_tool_calls(
                json_result.raw_text, model.capabilities.preferred_tool_format
            )
        confidence = TEXT_CALL_CONFIDENCE if calls else TEXT_ONLY_CONFIDENCE
        return _Generation(json_result.raw_text, calls, confidence, "text", usage)

    async def _execute_calls(
        self, calls: list[ToolCall], execution_context: ExecutionContext, config: FunctionCallingConfig
    ) -> list[ToolResult]:
        executor: Callable[[ToolCall], Awaitable[ToolResult]] | None = None
        if config.retry_failed_calls and config.max_call_retries > 0:
            policy = RetryPolicy(max_attempts=config.max_call_retries, initial_delay=config.retry_delay)

            async def execute_with_retry(call: ToolCall) -> ToolResult:
                result = await self.engine.execute_tool_call(call, execution_context)
                if not is_retryable_failure(result):
                    return result
                logger.info(f"Retrying failed call {call.name} up to {config.max_call_retries} times")
                return await with_retry(
                    lambda: self.engine.execute_tool_call(call, execution_context),
                    policy,
                    retry_on_result=is_retryable_failure,
                )

            executor = execute_with_retry

        return await self.engine.execute_tool_calls(
            calls,
            execution_context,
            parallel=config.allow_parallel_calls,
            stop_on_failure=not config.retry_failed_calls,
            executor=executor,
        )

    def _feed_back(
        self, context: ModelContext, model: ModelAdapter, generation: _Generation, results: list[ToolResult]
    ) -> None:
        provider = self.tool_interface.get_provider(model.capabilities.preferred_tool_format)
        if generation.text:
            context.add_message("assistant", generation.text)
        else:
            described = ", ".join(f"{call.name}({json.dumps(call.arguments)})" for call in generation.tool_calls)
            context.add_message("assistant", f"Calling: {described}")

        if provider is not None:
            rendered = "\n".join(provider.format_tool_result(result) for result in results)
        else:
            rendered = "\n".join(json.dumps(result.model_dump(), default=str) for result in results)
        context.add_message("user", f"{rendered}\n\n{CONTINUE_INSTRUCTION}")

    async def _generate_final_response(
        self,
        model: ModelAdapter,
        context: ModelContext,
        config: FunctionCallingConfig,
        state: _LoopState,
        signal: AbortSignal,
    ) -> str:
        final_prompt = f"{render_prompt(context.get_messages())}\n\n{FINAL_INSTRUCTION}"
        options = GenerationOptions(
            temperature=FINAL_RESPONSE_TEMPERATURE,
            max_tokens=FINAL_RESPONSE_MAX_TOKENS,
            abort_signal=signal,
        )
        try:
            text = await with_retry(
                lambda: model.generate_text(final_prompt, options),
                RetryPolicy(max_attempts=2, initial_delay=config.retry_delay),
            )
        except Exception as e:
            logger.warning(f"Final response generation failed for {model.name}: {e}")
            state.errors.append(f"Final response failed: {e}")
            return f"Unable to generate final response: {e}"

        self._add_usage(state, self._estimate_usage(final_prompt, text))
        context.add_message("assistant", text)
        return text

    def _context_manager(self, model: ModelAdapter, config: FunctionCallingConfig) -> SmartContextManager:
        if config.context_management is not None:
            return SmartContextManager(model.capabilities, config.context_management, self.token_counter)
        return self.context_managers.get_manager(model.name, model.capabilities)

    def _estimate_usage(self, prompt: str, completion: str) -> Usage:
        prompt_tokens = self.token_counter.count(prompt)
        completion_tokens = self.token_counter.count(completion)
        return Usage(prompt_tokens, completion_tokens, prompt_tokens + completion_tokens)

    def _add_usage(self, state: _LoopState, usage: Usage) -> None:
        state.usage.prompt_tokens += usage.prompt_tokens
        state.usage.completion_tokens += usage.completion_tokens
        state.usage.total_tokens += usage.total_tokens

    def _failure(self, state: _LoopState, error: str) -> FunctionCallingResult:
        return FunctionCallingResult(
            success=False,
            final_response=f"Function calling failed: {error}",
            function_calls=state.calls,
            results=state.results,
            iterations=state.iterations,
            confidence=0.0,
            errors=[*state.errors, error],
            strategy=state.strategy,
            usage=state.usage,
        )
