"""Provider query adapters."""

from visibility_engine.adapters.provider_query.base import (
    CheckOutcome,
    Citation,
    ProviderError,
    ProviderQueryAdapter,
    ProviderRateLimitedError,
    ProviderResponseError,
    ProviderTimeoutError,
    ProviderUnavailableError,
)
from visibility_engine.adapters.provider_query.dataforseo import DataForSEOProviderQueryAdapter
from visibility_engine.adapters.provider_query.stub import StubProviderQueryAdapter
from visibility_engine.config import settings


def get_provider_query_adapter() -> ProviderQueryAdapter:
    """Get the configured provider query adapter."""
    adapter = getattr(settings, "provider_query_adapter", "stub").lower()

    if adapter == "dataforseo":
        return DataForSEOProviderQueryAdapter()
    else:
        return StubProviderQueryAdapter()


__all__ = [
    "CheckOutcome",
    "Citation",
    "DataForSEOProviderQueryAdapter",
    "ProviderError",
    "ProviderQueryAdapter",
    "ProviderRateLimitedError",
    "ProviderResponseError",
    "ProviderTimeoutError",
    "ProviderUnavailableError",
    "StubProviderQueryAdapter",
    "get_provider_query_adapter",
]
