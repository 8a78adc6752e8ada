"""Adapters for external services."""

from visibility_engine.adapters.provider_query.base import ProviderQueryAdapter

__all__ = [
    "ProviderQueryAdapter",
]
