"""Per-model request and token rate limiting."""

import asyncio
import time

from limits import RateLimitItem, parse
from limits.storage import MemoryStorage
from limits.strategies import MovingWindowRateLimiter

from agentcore.errors import RateLimitExceededError
from agentcore.models.llm import RateLimits
from agentcore.utils.logging import get_logger

logger = get_logger(__name__)


class ModelRateLimiter:
    """Moving-window limiter keyed by model name."""

    def __init__(self, max_wait: float = 60.0):
        """Initialize rate limiter.

        Args:
            max_wait: Longest single wait in seconds before giving up
        """
        self.storage = MemoryStorage()
        self.limiter = MovingWindowRateLimiter(self.storage)
        self.max_wait = max_wait
        self._limits: dict[str, tuple[RateLimitItem | None, RateLimitItem | None]] = {}

    def configure(self, identifier: str, rate_limits: RateLimits | None) -> None:
        """Register the limits for a model; None removes them."""
        if rate_limits is None:
            self._limits.pop(identifier, None)
            return
        request_limit = (
            parse(f"{rate_limits.requests_per_minute}/minute") if rate_limits.requests_per_minute else None
        )
        token_limit = parse(f"{rate_limits.tokens_per_minute}/minute") if rate_limits.tokens_per_minute else None
        self._limits[identifier] = (request_limit, token_limit)

    def is_configured(self, identifier: str) -> bool:
        """Check whether limits are registered for a model."""
        return identifier in self._limits

    async def check_rate_limit(self, identifier: str, estimated_tokens: int = 0) -> None:
        """Wait until a request of the given size fits the model's limits.

        Raises:
            RateLimitExceededError: If the required wait exceeds max_wait
        """
        request_limit, token_limit = self._limits.get(identifier, (None, None))
        logger.debug(f"Checking rate limit for {estimated_tokens} tokens, identifier: {identifier}")

        if request_limit is not None:
            await self._acquire(request_limit, identifier, 1, "Request")
        if token_limit is not None and estimated_tokens > 0:
            await self._acquire(token_limit, f"{identifier}_tokens", min(estimated_tokens, token_limit.amount), "Token")

    async def _acquire(self, limit: RateLimitItem, key: str, cost: int, label: str) -> None:
        while not self.limiter.hit(limit, key, cost=cost):
            window_stats = self.limiter.get_window_stats(limit, key)
            wait_time = max(0.0, window_stats.reset_time - time.time())
            if wait_time > self.max_wait:
                raise RateLimitExceededError(
                    f"{label} rate limit for {key} requires waiting {wait_time:.2f}s", retry_after=wait_time
                )
            logger.warning(f"{label} rate limit exceeded for {key}, waiting {wait_time:.2f}s")
            await asyncio.sleep(max(wait_time, 0.01))
