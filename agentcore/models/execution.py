"""Execution-engine data models."""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from agentcore.clients.signals import AbortSignal

DEFAULT_MAX_FILE_SIZE = 10 * 1024 * 1024


class SecurityConfig(BaseModel):
    """Security policy applied to every tool execution."""

    model_config = ConfigDict(frozen=True)

    allow_file_operations: bool = True
    allow_network_access: bool = False
    allow_shell_execution: bool = False
    max_execution_time: float = Field(default=30.0, gt=0)  # seconds
    allowed_paths: list[str] | None = None
    blocked_paths: list[str] | None = None
    max_file_size: int = Field(default=DEFAULT_MAX_FILE_SIZE, gt=0)  # bytes


class ExecutionContext(BaseModel):
    """Per-call execution scope."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    session_id: str
    working_directory: str = "."
    security_config: SecurityConfig = Field(default_factory=SecurityConfig)
    metadata: dict[str, Any] = Field(default_factory=dict)
    abort_signal: AbortSignal | None = Field(default=None, exclude=True)


@dataclass
class ExecutionRecord:
    """Audit-log entry for one tool execution."""

    call_id: str
    tool_name: str
    session_id: str
    success: bool
    duration_ms: float
    error: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass
class ExecutionStats:
    """Aggregated execution statistics for a session."""

    total_executions: int = 0
    successful_executions: int = 0
    failed_executions: int = 0
    average_execution_time_ms: float = 0.0

    @property
    def success_rate(self) -> float:
        """Fraction of executions that succeeded."""
        if self.total_executions == 0:
            return 0.0
        return self.successful_executions / self.total_executions
