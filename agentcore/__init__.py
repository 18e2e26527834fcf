"""Function-calling reliability and execution core."""

__version__ = "0.1.0"
