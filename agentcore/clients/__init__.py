"""Clients for the function-calling core."""
