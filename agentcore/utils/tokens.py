"""Token estimation shared by context management and rate limiting."""

import tiktoken

from agentcore.models.llm import Message
from agentcore.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_ENCODING = "cl100k_base"


class TokenCounter:
    """Counts tokens with tiktoken, falling back to roughly four characters per token."""

    def __init__(self, encoding_name: str | None = DEFAULT_ENCODING):
        """Initialize token counter.

        Args:
            encoding_name: tiktoken encoding to load lazily; None always uses the character estimate
        """
        self.encoding_name = encoding_name
        self._tokenizer: tiktoken.Encoding | None = None
        self._loaded = encoding_name is None

    @property
    def tokenizer(self) -> tiktoken.Encoding | None:
        """The loaded encoding, or None when unavailable."""
        if not self._loaded:
            self._loaded = True
            try:
                self._tokenizer = tiktoken.get_encoding(self.encoding_name)
            except Exception as e:
                logger.warning(f"Tokenizer {self.encoding_name} unavailable, using character estimate: {e}")
                self._tokenizer = None
        return self._tokenizer

    def count(self, text: str) -> int:
        """Estimate the token count of a piece of text."""
        if not text:
            return 0
        tokenizer = self.tokenizer
        try:
            return len(tokenizer.encode(text)) if tokenizer else len(text) // 4
        except Exception:
            # Fallback: roughly 4 characters per token
            return len(text) // 4

    def count_messages(self, messages: list[Message]) -> int:
        """Estimate the token count of a list of role/content messages."""
        return sum(self.count(message.content) for message in messages)
