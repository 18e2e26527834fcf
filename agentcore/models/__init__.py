"""Models for the function-calling core."""
