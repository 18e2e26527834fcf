"""Top-level façade for coordinated function calling with session and metrics tracking."""

import copy
import io
import time
from datetime import UTC, datetime

from rich.console import Console
from rich.table import Table

from agentcore.clients.base import ModelAdapter
from agentcore.clients.signals import AbortSignal
from agentcore.models.session import (
    CoordinatedCallResult,
    FunctionCallingConfig,
    FunctionCallingMetrics,
    FunctionCallingResult,
    ModelFunctionCallingStats,
    SessionHistory,
)
from agentcore.services.execution_engine import ToolExecutionEngine
from agentcore.services.function_calling import EnhancedFunctionCalling
from agentcore.tools.base import Tool
from agentcore.tools.registry import ToolRegistry
from agentcore.utils.ids import generate_session_id
from agentcore.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_MAX_SESSIONS = 100
REPORT_WIDTH = 100
ERRORS_PER_SESSION = 2


def _running_average(current: float, value: float, count: int) -> float:
    return (current * (count - 1) + value) / count


class FunctionCallingCoordinator:
    """Exposes registered tools to a model and tracks every coordinated call."""

    def __init__(
        self,
        registry: ToolRegistry,
        function_calling: EnhancedFunctionCalling | None = None,
        max_sessions: int = DEFAULT_MAX_SESSIONS,
    ):
        """Initialize the coordinator.

        Args:
            registry: Tools available to coordinated calls
            function_calling: Loop implementation; built over the registry if omitted
            max_sessions: Session records retained by cleanup_sessions
        """
        self.registry = registry
        self.function_calling = function_calling or EnhancedFunctionCalling(ToolExecutionEngine(registry))
        self.max_sessions = max_sessions
        self.metrics = FunctionCallingMetrics()
        self._sessions: dict[str, SessionHistory] = {}

    def register_tool(self, tool: Tool) -> None:
        self.registry.register_tool(tool)

    def unregister_tool(self, name: str) -> bool:
        return self.registry.unregister_tool(name)

    async def execute_coordinated_function_calling(
        self,
        model: ModelAdapter,
        prompt: str,
        requested_tools: list[str] | None = None,
        config: FunctionCallingConfig | None = None,
        session_id: str | None = None,
        abort_signal: AbortSignal | None = None,
    ) -> CoordinatedCallResult:
        """Run one coordinated function-calling session.

        Args:
            model: Backend to drive
            prompt: User prompt
            requested_tools: Subset of registered tool names to expose; all tools if omitted
            config: Loop controls
            session_id: Caller-chosen session id; generated if omitted
            abort_signal: Cooperative cancellation for the whole session

        Returns:
            Summary of the session; failures are reported, never raised
        """
        session_id = session_id or generate_session_id()
        start = time.perf_counter()
        tools = self.registry.get_definitions(requested_tools)

        if not tools:
            logger.warning(f"No tools available for session {session_id}")
            return CoordinatedCallResult(
                success=False,
                final_response="No tools available for function calling",
                session_id=session_id,
                errors=["No tools configured"],
            )

        tool_names = [tool.name for tool in tools]
        history = SessionHistory(session_id=session_id, model_name=model.name, prompt=prompt, tool_names=tool_names)
        self._sessions[session_id] = history
        logger.info(f"Starting coordinated function calling session {session_id} with tools: {tool_names}")

        try:
            result = await self.function_calling.execute_with_functions(
                model, prompt, tools, config, session_id=session_id, abort_signal=abort_signal
            )
        except Exception as e:
            logger.exception(f"Coordinated function calling failed for session {session_id}")
            error = f"Function calling coordination failed: {e}"
            execution_time_ms = (time.perf_counter() - start) * 1000
            history.end_time = datetime.now(UTC)
            history.errors = [error]
            failed = FunctionCallingResult(success=False, final_response=error, errors=[error])
            self._update_metrics(model.name, failed, execution_time_ms)
            self.cleanup_sessions()
            return CoordinatedCallResult(
                success=False,
                final_response=error,
                session_id=session_id,
                execution_time_ms=execution_time_ms,
                errors=[error],
            )

        execution_time_ms = (time.perf_counter() - start) * 1000
        tools_used = list(dict.fromkeys(call.name for call in result.function_calls))

        history.end_time = datetime.now(UTC)
        history.success = result.success
        history.iterations = result.iterations
        history.confidence = result.confidence
        history.tools_invoked = tools_used
        history.final_response = result.final_response
        history.errors = list(result.errors)

        self._update_metrics(model.name, result, execution_time_ms)
        self.cleanup_sessions()

        logger.info(
            f"Session {session_id} finished: success={result.success}, iterations={result.iterations}, "
            f"confidence={result.confidence:.2f}, {execution_time_ms:.0f}ms"
        )
        return CoordinatedCallResult(
            success=result.success,
            final_response=result.final_response,
            session_id=session_id,
            tools_used=tools_used,
            execution_time_ms=execution_time_ms,
            iterations=result.iterations,
            confidence=result.confidence,
            errors=result.errors or None,
        )

    def get_metrics(self) -> FunctionCallingMetrics:
        """Snapshot of the running metrics."""
        return copy.deepcopy(self.metrics)

    def get_session_history(self, session_id: str) -> SessionHistory | None:
        return self._sessions.get(session_id)

    def get_all_session_histories(self) -> list[SessionHistory]:
        """All retained sessions, oldest first."""
        return sorted(self._sessions.values(), key=lambda history: history.start_time)

    def cleanup_sessions(self) -> int:
        """Evict the oldest sessions beyond max_sessions.

        Returns:
            Number of evicted sessions
        """
        excess = len(self._sessions) - self.max_sessions
        if excess <= 0:
            return 0
        for history in self.get_all_session_histories()[:excess]:
            del self._sessions[history.session_id]
        logger.debug(f"Evicted {excess} session records")
        return excess

    def reset_metrics(self) -> None:
        """Clear running metrics, session records and JSON generation telemetry."""
        self.metrics = FunctionCallingMetrics()
        self._sessions.clear()
        self.function_calling.reset_performance_tracking()

    def generate_performance_report(self) -> str:
        """Render overall, per-model and tool-usage statistics as plain text."""
        console = Console(record=True, file=io.StringIO(), width=REPORT_WIDTH)
        metrics = self.metrics

        console.rule("Function Calling Performance Report")
        overall = Table(title="Overall", show_header=False)
        overall.add_column("Metric")
        overall.add_column("Value", justify="right")
        overall.add_row("Total calls", str(metrics.total_calls))
        overall.add_row("Successful calls", str(metrics.successful_calls))
        overall.add_row("Failed calls", str(metrics.failed_calls))
        overall.add_row("Success rate", f"{metrics.success_rate:.1%}")
        overall.add_row("Average iterations", f"{metrics.average_iterations:.2f}")
        overall.add_row("Average confidence", f"{metrics.average_confidence:.2f}")
        console.print(overall)

        if metrics.model_performance:
            models = Table(title="Model Performance")
            models.add_column("Model")
            for column in ("Attempts", "Success rate", "Avg iterations", "Avg tokens", "Avg time (ms)"):
                models.add_column(column, justify="right")
            models.add_column("Preferred strategy")
            for stats in metrics.model_performance.values():
                models.add_row(
                    stats.model_name,
                    str(stats.total_attempts),
                    f"{stats.success_rate:.1%}",
                    f"{stats.average_iterations:.2f}",
                    f"{stats.average_tokens_used:.0f}",
                    f"{stats.average_response_time_ms:.0f}",
                    stats.preferred_strategy,
                )
            console.print(models)

        if metrics.tool_usage:
            usage = Table(title="Tool Usage")
            usage.add_column("Tool")
            usage.add_column("Invocations", justify="right")
            for name, count in sorted(metrics.tool_usage.items(), key=lambda item: item[1], reverse=True):
                usage.add_row(name, str(count))
            console.print(usage)

        return console.export_text()

    def _model_stats(self, model_name: str) -> ModelFunctionCallingStats:
        if model_name not in self.metrics.model_performance:
            self.metrics.model_performance[model_name] = ModelFunctionCallingStats(model_name=model_name)
        return self.metrics.model_performance[model_name]

    def _update_metrics(self, model_name: str, result: FunctionCallingResult, execution_time_ms: float) -> None:
        metrics = self.metrics
        metrics.total_calls += 1
        if result.success:
            metrics.successful_calls += 1
        else:
            metrics.failed_calls += 1
        total = metrics.total_calls
        metrics.average_iterations = _running_average(metrics.average_iterations, result.iterations, total)
        metrics.average_confidence = _running_average(metrics.average_confidence, result.confidence, total)

        for call in result.function_calls:
            metrics.tool_usage[call.name] = metrics.tool_usage.get(call.name, 0) + 1

        stats = self._model_stats(model_name)
        stats.total_attempts += 1
        if result.success:
            stats.successful_attempts += 1
        count = stats.total_attempts
        stats.average_iterations = _running_average(stats.average_iterations, result.iterations, count)
        stats.average_confidence = _running_average(stats.average_confidence, result.confidence, count)
        stats.average_tokens_used = _running_average(stats.average_tokens_used, result.usage.total_tokens, count)
        stats.average_response_time_ms = _running_average(stats.average_response_time_ms, execution_time_ms, count)
        if result.strategy is not None:
            stats.strategy_counts[result.strategy] = stats.strategy_counts.get(result.strategy, 0) + 1
        if result.errors:
            stats.add_errors(result.errors[:ERRORS_PER_SESSION])
