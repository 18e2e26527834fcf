"""Reliable JSON generation data models."""

from dataclasses import dataclass, field
from typing import Any, Literal

from pydantic import Field

from agentcore.models.llm import GenerationOptions

FallbackStrategy = Literal["repair", "extract", "regenerate"]
BiasPreset = Literal["light", "moderate", "aggressive"]
JsonStrategy = Literal["direct", "markdown", "pattern", "repair", "extract", "tool_calling"]


class JsonGenerationOptions(GenerationOptions):
    """Generation options plus retry, fallback and validation controls."""

    max_retries: int = Field(default=3, ge=1)
    fallback_strategy: FallbackStrategy = "repair"
    strict_validation: bool = False
    json_schema: dict[str, Any] | None = None
    tune_for_backend: bool = True
    bias_preset: BiasPreset | None = "moderate"


@dataclass
class JsonGenerationResult:
    """Outcome of a reliable JSON generation request."""

    success: bool
    data: Any = None
    raw_text: str = ""
    attempts: int = 0
    errors: list[str] = field(default_factory=list)
    confidence: float = 0.0
    strategy: JsonStrategy | None = None


@dataclass
class ModelJsonPerformance:
    """Per-model JSON generation telemetry."""

    model_name: str
    attempts: int = 0
    successes: int = 0
    failures: int = 0

    @property
    def success_rate(self) -> float:
        """Fraction of generation requests that produced JSON."""
        if self.attempts == 0:
            return 0.0
        return self.successes / self.attempts
