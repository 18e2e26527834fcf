"""Identifier generation."""

from cuid2 import cuid_wrapper

cuid = cuid_wrapper()


def generate_call_id() -> str:
    """Generate a unique id for a tool call."""
    return f"call_{cuid()}"


def generate_session_id() -> str:
    """Generate a unique id for a function-calling session."""
    return f"session_{cuid()}"


def generate_context_id() -> str:
    """Generate a unique id for a model context."""
    return f"ctx_{cuid()}"
