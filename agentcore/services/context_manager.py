"""Keeps model conversations inside their token budget."""

import re
from collections import deque
from dataclasses import replace
from datetime import UTC, datetime

from agentcore.clients.base import ModelContext
from agentcore.models.context import (
    CompressionResult,
    CompressionStrategy,
    ContextManagementConfig,
    ContextMetrics,
    EnhancedMessage,
)
from agentcore.models.llm import Message, ModelCapabilities
from agentcore.utils.logging import get_logger
from agentcore.utils.tokens import TokenCounter

logger = get_logger(__name__)

SUMMARY_PREFIX = "[SUMMARY] "
SENTENCE_SPLIT = re.compile(r"[.!?]+")
MIN_SENTENCE_LENGTH = 10
COMPRESSION_HISTORY_SIZE = 100
MIN_BATCH_SIZE = 100


def create_summary(messages: list[Message]) -> str:
    """Extractive summary from the first, middle and last sentences."""
    if not messages:
        return ""
    content = " ".join(f"{message.role}: {message.content}" for message in messages)
    sentences = [s.strip() for s in SENTENCE_SPLIT.split(content) if len(s.strip()) > MIN_SENTENCE_LENGTH]
    max_sentences = max(1, min(3, len(sentences) // 3))

    picked = []
    if sentences:
        picked.append(sentences[0])
    if len(sentences) > 2:
        picked.append(sentences[len(sentences) // 2])
    if len(sentences) > 1:
        picked.append(sentences[-1])
    return ". ".join(picked[:max_sentences]) + "."


def calculate_importance(message: Message, index: int, total: int) -> float:
    """Heuristic importance in [0, 1]; system messages, recency, length, code and questions raise it."""
    importance = 1.0 if message.role == "system" else 0.5
    importance += (index / total) * 0.3
    if len(message.content) > 200:
        importance += 0.1
    if "```" in message.content:
        importance += 0.2
    if "?" in message.content:
        importance += 0.1
    return min(1.0, importance)


class SmartContextManager:
    """Compresses a context toward a target utilization when it exceeds a ceiling."""

    def __init__(
        self,
        capabilities: ModelCapabilities,
        config: ContextManagementConfig | None = None,
        token_counter: TokenCounter | None = None,
    ):
        """Initialize context manager.

        Args:
            capabilities: Capabilities of the model whose contexts are managed
            config: Thresholds and preservation windows
            token_counter: Token estimator shared with the contexts
        """
        self.capabilities = capabilities
        self.config = config or ContextManagementConfig()
        self.token_counter = token_counter or TokenCounter()
        self.metrics = ContextMetrics(max_tokens=capabilities.max_context_size)
        self._ratios: deque[float] = deque(maxlen=COMPRESSION_HISTORY_SIZE)

    @property
    def max_tokens(self) -> int:
        return self.capabilities.max_context_size

    @property
    def target_tokens(self) -> int:
        return int(self.max_tokens * self.config.target_utilization)

    async def manage_context(self, context: ModelContext) -> CompressionResult | None:
        """Compress the context if it is over the utilization ceiling.

        Returns:
            The compression outcome, or None when no compression was needed
        """
        if not self.config.enable_auto_compression:
            return None

        self._update_usage(context)
        if not self.needs_compression(context):
            return None

        logger.info(
            f"Context {context.id} at {context.get_token_count()}/{self.max_tokens} tokens, compressing "
            f"toward {self.target_tokens}"
        )
        return await self.compress_context(context)

    async def compress_context(self, context: ModelContext) -> CompressionResult:
        """Try escalating strategies until one reaches the target token count.

        Candidates are built without touching the context; only an accepted
        candidate is written back. When every attempt misses the target the
        context is left as it was.
        """
        messages = context.get_messages()
        original_tokens = context.get_token_count()
        target = self.target_tokens
        tokens_to_remove = original_tokens - target

        if tokens_to_remove <= 0:
            return CompressionResult(success=True, original_tokens=original_tokens, compressed_tokens=original_tokens)

        enhanced = self._enhance(messages)
        for attempt in range(1, self.config.max_compression_attempts + 1):
            strategy = self._select_strategy(attempt)
            candidate = self._run_strategy(strategy, enhanced, tokens_to_remove)
            candidate_tokens = self.token_counter.count_messages(candidate)
            logger.debug(f"Compression attempt {attempt} ({strategy}): {original_tokens} -> {candidate_tokens} tokens")

            if candidate_tokens <= target:
                self._apply(context, candidate)
                result = CompressionResult(
                    success=True,
                    original_tokens=original_tokens,
                    compressed_tokens=context.get_token_count(),
                    messages_removed=len(messages) - len(candidate),
                    strategy=strategy,
                    attempts=attempt,
                )
                self._record_compression(result, messages, candidate)
                logger.info(
                    f"Compressed context {context.id} with {strategy}: "
                    f"{original_tokens} -> {result.compressed_tokens} tokens"
                )
                return result

        logger.warning(
            f"Could not compress context {context.id} to {target} tokens in "
            f"{self.config.max_compression_attempts} attempts"
        )
        return CompressionResult(
            success=False,
            original_tokens=original_tokens,
            compressed_tokens=original_tokens,
            attempts=self.config.max_compression_attempts,
            error="Maximum compression attempts reached",
        )

    def needs_compression(self, context: ModelContext) -> bool:
        """Whether utilization is above the ceiling."""
        return context.get_token_count() / self.max_tokens > self.config.max_utilization

    def estimate_tokens(self, text: str) -> int:
        """Estimate tokens for a piece of text."""
        return self.token_counter.count(text)

    def get_optimal_batch_size(self) -> int:
        """Tokens that can still be added, less a 10% safety margin."""
        available = self.metrics.max_tokens - self.metrics.current_tokens
        return max(MIN_BATCH_SIZE, int(available - self.metrics.max_tokens * 0.1))

    def get_metrics(self) -> ContextMetrics:
        """Get a copy of the current metrics."""
        return replace(self.metrics)

    def reset_metrics(self) -> None:
        """Reset compression counters; current usage is kept."""
        self.metrics.compression_count = 0
        self.metrics.messages_removed = 0
        self.metrics.bytes_saved = 0
        self.metrics.total_operations = 0
        self.metrics.average_compression_ratio = 1.0
        self.metrics.last_compression = None
        self._ratios.clear()

    def _select_strategy(self, attempt: int) -> CompressionStrategy:
        if attempt == 1:
            return "truncate"
        if attempt == 2:
            return "summarize"
        return "adaptive"

    def _run_strategy(
        self, strategy: CompressionStrategy, messages: list[EnhancedMessage], tokens_to_remove: int
    ) -> list[Message]:
        if strategy == "truncate":
            return self._truncate(messages, tokens_to_remove)
        if strategy == "summarize":
            return self._summarize(messages)
        return self._adaptive(messages, tokens_to_remove)

    def _split(self, messages: list[EnhancedMessage]) -> tuple[int, int]:
        start = min(self.config.preserve_first_messages, len(messages))
        end = max(start, len(messages) - self.config.preserve_last_messages)
        return start, end

    def _truncate(self, messages: list[EnhancedMessage], tokens_to_remove: int) -> list[Message]:
        start, end = self._split(messages)
        removed_tokens = 0
        cut = start
        while cut < end and removed_tokens < tokens_to_remove:
            removed_tokens += messages[cut].tokens
            cut += 1
        return [m.message for m in messages[:start]] + [m.message for m in messages[cut:]]

    def _summarize(self, messages: list[EnhancedMessage]) -> list[Message]:
        start, end = self._split(messages)
        if start >= end or not self.config.enable_summarization:
            return [m.message for m in messages]
        summary = self._summary_message([m.message for m in messages[start:end]])
        return [m.message for m in messages[:start]] + [summary] + [m.message for m in messages[end:]]

    def _adaptive(self, messages: list[EnhancedMessage], tokens_to_remove: int) -> list[Message]:
        start, end = self._split(messages)
        compressible = messages[start:end]

        removed_tokens = 0
        kept: list[EnhancedMessage] = []
        for candidate in sorted(compressible, key=lambda m: m.importance):
            if removed_tokens >= tokens_to_remove:
                kept.append(candidate)
            else:
                removed_tokens += candidate.tokens
        kept.sort(key=lambda m: m.index)

        middle = [m.message for m in kept]
        if removed_tokens < tokens_to_remove and len(kept) > 2 and self.config.enable_summarization:
            least_important = sorted(kept, key=lambda m: m.importance)[: len(kept) // 2]
            summarized = {m.index for m in least_important}
            summary = self._summary_message([m.message for m in kept if m.index in summarized])
            first_summarized = min(summarized)
            middle = []
            for m in kept:
                if m.index == first_summarized:
                    middle.append(summary)
                elif m.index not in summarized:
                    middle.append(m.message)

        return [m.message for m in messages[:start]] + middle + [m.message for m in messages[end:]]

    def _summary_message(self, messages: list[Message]) -> Message:
        return Message(role="assistant", content=f"{SUMMARY_PREFIX}{create_summary(messages)}")

    def _enhance(self, messages: list[Message]) -> list[EnhancedMessage]:
        return [
            EnhancedMessage(
                message=message,
                index=index,
                tokens=self.token_counter.count(message.content),
                importance=calculate_importance(message, index, len(messages)),
            )
            for index, message in enumerate(messages)
        ]

    def _apply(self, context: ModelContext, messages: list[Message]) -> None:
        context.clear()
        for message in messages:
            context.add_message(message.role, message.content)

    def _update_usage(self, context: ModelContext) -> None:
        if not self.config.enable_metrics:
            return
        self.metrics.current_tokens = context.get_token_count()
        self.metrics.utilization = self.metrics.current_tokens / self.max_tokens * 100
        self.metrics.total_operations += 1

    def _record_compression(self, result: CompressionResult, before: list[Message], after: list[Message]) -> None:
        if not self.config.enable_metrics:
            return
        self.metrics.compression_count += 1
        self.metrics.messages_removed += max(0, result.messages_removed)
        self.metrics.bytes_saved += max(
            0, sum(len(m.content.encode()) for m in before) - sum(len(m.content.encode()) for m in after)
        )
        self._ratios.append(result.compression_ratio)
        self.metrics.average_compression_ratio = sum(self._ratios) / len(self._ratios)
        self.metrics.last_compression = datetime.now(UTC)
        self.metrics.current_tokens = result.compressed_tokens
        self.metrics.utilization = result.compressed_tokens / self.max_tokens * 100


class ContextManagerFactory:
    """Caches one context manager per model name."""

    def __init__(self, token_counter: TokenCounter | None = None):
        self.token_counter = token_counter
        self._managers: dict[str, SmartContextManager] = {}

    def get_manager(
        self, model_name: str, capabilities: ModelCapabilities, config: ContextManagementConfig | None = None
    ) -> SmartContextManager:
        """Get the model's manager, creating it on first use."""
        if model_name not in self._managers:
            self._managers[model_name] = SmartContextManager(capabilities, config, self.token_counter)
        return self._managers[model_name]

    def clear_cache(self) -> None:
        self._managers.clear()

    def get_all_metrics(self) -> dict[str, ContextMetrics]:
        """Metrics of every cached manager by model name."""
        return {name: manager.get_metrics() for name, manager in self._managers.items()}
