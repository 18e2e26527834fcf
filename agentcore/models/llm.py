"""Model-adapter data models (backend-agnostic)."""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from agentcore.clients.signals import AbortSignal
from agentcore.models.tools import ToolCall, ToolFormat

Backend = Literal["ollama", "huggingface", "cloud"]
MessageRole = Literal["user", "assistant", "system"]
FinishReason = Literal["stop", "length", "tool_calls", "error"]


class Message(BaseModel):
    """A single conversation message."""

    model_config = ConfigDict(frozen=True)

    role: MessageRole
    content: str


class RateLimits(BaseModel):
    """Per-backend throughput limits."""

    model_config = ConfigDict(frozen=True)

    tokens_per_minute: int | None = None
    requests_per_minute: int | None = None


class ModelCapabilities(BaseModel):
    """Static capability descriptor of a model backend."""

    model_config = ConfigDict(frozen=True)

    supports_tool_calling: bool = False
    supports_streaming: bool = False
    supports_system_prompts: bool = True
    supports_image_input: bool = False
    supports_audio: bool = False
    max_context_size: int = 4096
    preferred_tool_format: ToolFormat = "xml"
    rate_limits: RateLimits | None = None


class GenerationOptions(BaseModel):
    """Options for a single generation request."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    max_tokens: int | None = None
    temperature: float | None = None
    top_p: float | None = None
    top_k: int | None = None
    stop_sequences: list[str] | None = None
    system_prompt: str | None = None
    context_id: str | None = None
    tool_choice: Literal["auto", "none", "required"] | None = None
    format: Literal["text", "json"] | None = None
    timeout: float | None = None
    logit_bias: dict[int, float] | None = None
    abort_signal: AbortSignal | None = Field(default=None, exclude=True)


@dataclass
class Usage:
    """Token usage reported by a backend."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


@dataclass
class GenerationResult:
    """Result of a tool-aware generation."""

    text: str
    tool_calls: list[ToolCall] | None = None
    finish_reason: FinishReason = "stop"
    usage: Usage | None = None


@dataclass
class ModelHealth:
    """Health snapshot of a backend."""

    status: Literal["healthy", "degraded", "unavailable"]
    latency: float | None = None
    issues: list[str] = field(default_factory=list)
    last_checked: datetime = field(default_factory=lambda: datetime.now(UTC))


class ContextOptions(BaseModel):
    """Options for creating a model context."""

    context_size: int | None = Field(default=None, gt=0)
    system_prompt: str | None = None
    conversation_id: str | None = None
