"""Contracts for model backends and their conversation contexts."""

from collections.abc import AsyncIterator
from typing import Protocol, runtime_checkable

from agentcore.models.llm import (
    Backend,
    ContextOptions,
    GenerationOptions,
    GenerationResult,
    Message,
    MessageRole,
    ModelCapabilities,
    ModelHealth,
)
from agentcore.models.tools import ToolDefinition
from agentcore.utils.ids import generate_context_id
from agentcore.utils.tokens import TokenCounter


@runtime_checkable
class ModelContext(Protocol):
    """Ordered conversation owned by a single caller."""

    @property
    def id(self) -> str: ...

    @property
    def model_name(self) -> str: ...

    @property
    def context_size(self) -> int: ...

    def add_message(self, role: MessageRole, content: str) -> None:
        """Append a message."""
        ...

    def get_messages(self) -> list[Message]:
        """Return a copy of the messages in order."""
        ...

    def clear(self) -> None:
        """Remove all messages."""
        ...

    def get_token_count(self) -> int:
        """Estimate tokens currently used."""
        ...

    def clone(self) -> "ModelContext":
        """Create an independent copy."""
        ...


@runtime_checkable
class ModelAdapter(Protocol):
    """Backend-agnostic model interface consumed by the core."""

    name: str
    backend: Backend
    capabilities: ModelCapabilities

    async def generate_text(self, prompt: str, options: GenerationOptions | None = None) -> str:
        """Generate a completion for a prompt."""
        ...

    def generate_text_stream(self, prompt: str, options: GenerationOptions | None = None) -> AsyncIterator[str]:
        """Stream completion chunks for a prompt."""
        ...

    async def generate_with_tools(
        self, prompt: str, tools: list[ToolDefinition], options: GenerationOptions | None = None
    ) -> GenerationResult:
        """Generate with native tool calling."""
        ...

    def create_context(self, options: ContextOptions | None = None) -> ModelContext:
        """Create a new conversation context."""
        ...

    async def get_health(self) -> ModelHealth:
        """Report backend health."""
        ...


class InMemoryModelContext:
    """List-backed model context."""

    def __init__(
        self,
        model_name: str,
        context_size: int,
        context_id: str | None = None,
        token_counter: TokenCounter | None = None,
    ):
        """Initialize an empty context.

        Args:
            model_name: Owning model's name
            context_size: Token budget of the model
            context_id: Explicit id (generated when omitted)
            token_counter: Token estimator (tiktoken-backed by default)
        """
        self._id = context_id or generate_context_id()
        self._model_name = model_name
        self._context_size = context_size
        self._messages: list[Message] = []
        self.token_counter = token_counter or TokenCounter()

    @classmethod
    def from_options(
        cls,
        model_name: str,
        default_size: int,
        options: ContextOptions | None = None,
        token_counter: TokenCounter | None = None,
    ) -> "InMemoryModelContext":
        """Create a context honoring size, id and system prompt options."""
        options = options or ContextOptions()
        context = cls(
            model_name=model_name,
            context_size=options.context_size or default_size,
            context_id=options.conversation_id,
            token_counter=token_counter,
        )
        if options.system_prompt:
            context.add_message("system", options.system_prompt)
        return context

    @property
    def id(self) -> str:
        return self._id

    @property
    def model_name(self) -> str:
        return self._model_name

    @property
    def context_size(self) -> int:
        return self._context_size

    def add_message(self, role: MessageRole, content: str) -> None:
        self._messages.append(Message(role=role, content=content))

    def get_messages(self) -> list[Message]:
        return list(self._messages)

    def clear(self) -> None:
        self._messages.clear()

    def get_token_count(self) -> int:
        return sum(self.token_counter.count(message.content) for message in self._messages)

    def clone(self) -> "InMemoryModelContext":
        copy = InMemoryModelContext(
            model_name=self._model_name,
            context_size=self._context_size,
            token_counter=self.token_counter,
        )
        copy._messages = list(self._messages)
        return copy
