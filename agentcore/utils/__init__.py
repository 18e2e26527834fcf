"""Utils for the function-calling core."""
