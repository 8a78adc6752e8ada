"""LLM visibility batch check engine."""

__version__ = "0.1.0"
