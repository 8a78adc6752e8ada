"""Stub provider query adapter for testing and local runs."""

import hashlib

from visibility_engine.adapters.provider_query.base import (
    CheckOutcome,
    ProviderQueryAdapter,
    ProviderResponseError,
)
from visibility_engine.domain.enums import LLMProvider
from visibility_engine.logging import get_logger

logger = get_logger(__name__)


class StubProviderQueryAdapter(ProviderQueryAdapter):
    """Returns deterministic outcomes derived from the question and provider.

    The same (question, provider) pair always yields the same outcome, so
    aggregates computed from stub data are reproducible.
    """

    def __init__(self, failing_providers: set[LLMProvider] | None = None) -> None:
        self.failing_providers = failing_providers or set()
        self.calls: list[tuple[str, LLMProvider]] = []

    @property
    def name(self) -> str:
        return "stub"

    async def check(
        self,
        question: str,
        domain: str,
        brand_name: str | None,
        provider: LLMProvider,
        timeout: float,  # noqa: ARG002
    ) -> CheckOutcome:
        """Return a mock outcome."""
        self.calls.append((question, provider))

        if provider in self.failing_providers:
            raise ProviderResponseError(provider, "stub configured to fail")

        digest = hashlib.sha256(f"{provider}:{question}".encode()).digest()
        cited = digest[0] % 3 == 0
        mentioned = cited or digest[1] % 2 == 0
        position = (digest[2] % 5) + 1 if cited else None

        logger.debug(
            "stub_provider_check",
            provider=str(provider),
            cited=cited,
            mentioned=mentioned,
        )

        return CheckOutcome(
            cited=cited,
            mentioned=mentioned,
            citation_position=position,
            citation_url=f"https://{domain}/" if cited else None,
            total_citations=(digest[3] % 8) + (1 if cited else 0),
            response_snippet=f"Stub answer about {brand_name or domain}" if mentioned else None,
        )

    async def health_check(self) -> bool:
        """Stub adapter is always healthy."""
        return True
