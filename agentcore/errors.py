"""Exception types used across the function-calling core."""

CRITICAL_ERROR_PHRASES = (
    "security violation",
    "permission denied",
    "access denied",
    "authentication failed",
)


class AgentCoreError(Exception):
    """Base class for all function-calling core errors."""


class ToolValidationError(AgentCoreError):
    """A tool call failed validation before execution."""

    def __init__(self, message: str, tool_name: str | None = None):
        super().__init__(message)
        self.tool_name = tool_name


class ToolTimeoutError(AgentCoreError, TimeoutError):
    """An operation did not finish within its time limit."""

    def __init__(self, message: str, timeout: float):
        super().__init__(message)
        self.timeout = timeout


class ConversionError(AgentCoreError):
    """A dialect conversion failed.

    Carries a machine-readable ``code`` so callers can branch on the failure kind
    without parsing the message.
    """

    def __init__(self, message: str, code: str, provider: str | None = None):
        super().__init__(message)
        self.code = code
        self.provider = provider


class RateLimitExceededError(AgentCoreError):
    """A rate limit would require waiting longer than allowed."""

    def __init__(self, message: str, retry_after: float):
        super().__init__(message)
        self.retry_after = retry_after


def is_critical_error(message: str | None) -> bool:
    """Check whether an error message describes a security, permission or auth failure."""
    if not message:
        return False
    lowered = message.lower()
    return any(phrase in lowered for phrase in CRITICAL_ERROR_PHRASES)
