"""Function-calling session, result and metrics models."""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from agentcore.models.context import ContextManagementConfig
from agentcore.models.execution import SecurityConfig
from agentcore.models.llm import Usage
from agentcore.models.tools import ToolCall, ToolResult

CallingStrategy = Literal["native", "json", "text"]

MAX_RETAINED_ERRORS = 10


class FunctionCallingConfig(BaseModel):
    """Controls for the generate / execute / feed-back loop."""

    model_config = ConfigDict(frozen=True)

    max_iterations: int = Field(default=5, ge=1)
    allow_parallel_calls: bool = True
    retry_failed_calls: bool = True
    max_call_retries: int = Field(default=1, ge=0)
    retry_delay: float = Field(default=0.5, ge=0)  # seconds, first backoff step
    timeout: float = Field(default=60.0, gt=0)  # seconds, whole loop
    fallback_to_text: bool = True
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    context_management: ContextManagementConfig | None = None


@dataclass
class FunctionCallingResult:
    """Outcome of one function-calling loop."""

    success: bool
    final_response: str
    function_calls: list[ToolCall] = field(default_factory=list)
    results: list[ToolResult] = field(default_factory=list)
    iterations: int = 0
    confidence: float = 0.0
    errors: list[str] = field(default_factory=list)
    strategy: CallingStrategy | None = None
    usage: Usage = field(default_factory=Usage)


@dataclass
class CoordinatedCallResult:
    """Outcome returned to callers of the coordinator."""

    success: bool
    final_response: str
    session_id: str
    tools_used: list[str] = field(default_factory=list)
    execution_time_ms: float = 0.0
    iterations: int = 0
    confidence: float = 0.0
    errors: list[str] | None = None


@dataclass
class SessionHistory:
    """Record of one coordinated call."""

    session_id: str
    model_name: str
    prompt: str
    tool_names: list[str]
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    success: bool = False
    iterations: int = 0
    confidence: float = 0.0
    tools_invoked: list[str] = field(default_factory=list)
    final_response: str | None = None
    errors: list[str] = field(default_factory=list)


@dataclass
class ModelFunctionCallingStats:
    """Running per-model function-calling statistics."""

    model_name: str
    total_attempts: int = 0
    successful_attempts: int = 0
    average_iterations: float = 0.0
    average_confidence: float = 0.0
    average_tokens_used: float = 0.0
    average_response_time_ms: float = 0.0
    strategy_counts: dict[str, int] = field(default_factory=dict)
    common_errors: list[str] = field(default_factory=list)

    @property
    def success_rate(self) -> float:
        """Fraction of attempts that succeeded."""
        return self.successful_attempts / max(1, self.total_attempts)

    @property
    def preferred_strategy(self) -> CallingStrategy:
        """Strategy that produced the most calls for this model."""
        if not self.strategy_counts:
            return "native"
        return max(self.strategy_counts, key=lambda name: self.strategy_counts[name])  # type: ignore[return-value]

    def add_errors(self, errors: list[str]) -> None:
        """Retain the most recent errors, bounded."""
        self.common_errors.extend(errors)
        if len(self.common_errors) > MAX_RETAINED_ERRORS:
            self.common_errors = self.common_errors[-MAX_RETAINED_ERRORS:]


@dataclass
class FunctionCallingMetrics:
    """Coordinator-wide running statistics."""

    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    average_iterations: float = 0.0
    average_confidence: float = 0.0
    model_performance: dict[str, ModelFunctionCallingStats] = field(default_factory=dict)
    tool_usage: dict[str, int] = field(default_factory=dict)

    @property
    def success_rate(self) -> float:
        """Fraction of coordinated calls that succeeded."""
        return self.successful_calls / max(1, self.total_calls)
