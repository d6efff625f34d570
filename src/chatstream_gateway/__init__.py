"""Streaming chat completion gateway over user-supplied provider API keys."""

__version__ = "0.1.0"
