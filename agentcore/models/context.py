"""Context-management data models."""

from dataclasses import dataclass
from datetime import datetime
from typing import Literal, Self

from pydantic import BaseModel, ConfigDict, Field, model_validator

from agentcore.models.llm import Message

CompressionStrategy = Literal["truncate", "summarize", "adaptive"]


class ContextManagementConfig(BaseModel):
    """Utilization thresholds and preservation windows for context compression."""

    model_config = ConfigDict(frozen=True)

    max_utilization: float = Field(default=0.85, gt=0, le=1)
    target_utilization: float = Field(default=0.5, gt=0, le=1)
    enable_auto_compression: bool = True
    enable_summarization: bool = True
    preserve_first_messages: int = Field(default=2, ge=0)
    preserve_last_messages: int = Field(default=5, ge=0)
    max_compression_attempts: int = Field(default=3, ge=1)
    enable_metrics: bool = True

    @model_validator(mode="after")
    def check_thresholds(self) -> Self:
        if self.target_utilization > self.max_utilization:
            raise ValueError("target_utilization must not exceed max_utilization")
        return self


@dataclass
class ContextMetrics:
    """Snapshot of context usage and compression history."""

    current_tokens: int = 0
    max_tokens: int = 0
    utilization: float = 0.0  # percent
    compression_count: int = 0
    messages_removed: int = 0
    bytes_saved: int = 0
    average_compression_ratio: float = 1.0
    last_compression: datetime | None = None
    total_operations: int = 0


@dataclass
class CompressionResult:
    """Outcome of a compression run."""

    success: bool
    original_tokens: int
    compressed_tokens: int
    messages_removed: int = 0
    strategy: CompressionStrategy | None = None
    attempts: int = 0
    error: str | None = None

    @property
    def compression_ratio(self) -> float:
        """How many times smaller the compressed context is."""
        if self.original_tokens == 0:
            return 1.0
        return self.original_tokens / max(1, self.compressed_tokens)


@dataclass
class EnhancedMessage:
    """A message annotated for compression decisions."""

    message: Message
    index: int
    tokens: int
    importance: float = 0.5
