"""Base interface for provider query adapters.

An adapter poses one question to one AI assistant and reports whether the
tracked domain was cited and whether the brand was mentioned. It owns the
retry/backoff policy for transient transport errors; anything it cannot
recover from is raised as a ProviderError.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass

from visibility_engine.domain.enums import LLMProvider


@dataclass(frozen=True)
class Citation:
    """One source linked from a provider response, in response order."""

    domain: str
    url: str | None
    title: str | None
    position: int
    is_ours: bool = False


@dataclass(frozen=True)
class CheckOutcome:
    """Result of a single provider check."""

    cited: bool
    mentioned: bool
    citation_position: int | None = None
    citation_url: str | None = None
    total_citations: int = 0
    response_snippet: str | None = None
    cost_usd: float = 0.0
    citations: tuple[Citation, ...] = ()

    def __post_init__(self) -> None:
        if self.citation_position is not None and self.citation_position < 1:
            raise ValueError("citation_position must be a positive integer")


class ProviderError(Exception):
    """A provider check that did not produce an outcome."""

    kind = "provider_error"
    retryable = False

    def __init__(
        self, provider: LLMProvider | str, message: str, retryable: bool | None = None
    ) -> None:
        self.provider = str(provider)
        self.message = message
        if retryable is not None:
            self.retryable = retryable
        super().__init__(f"{provider}: {message}")


class ProviderTimeoutError(ProviderError):
    """The provider did not answer within the allotted time."""

    kind = "timeout"
    retryable = True


class ProviderRateLimitedError(ProviderError):
    """The provider (or the gateway in front of it) rejected us for rate limits."""

    kind = "rate_limited"
    retryable = True


class ProviderResponseError(ProviderError):
    """The provider answered, but not with something we can interpret."""

    kind = "malformed_response"


class ProviderUnavailableError(ProviderError):
    """The provider cannot be reached at all (auth, outage, not configured)."""

    kind = "unavailable"


class ProviderQueryAdapter(ABC):
    """Abstract base class for provider query adapters.

    Implementations:
    - DataForSEOProviderQueryAdapter: Queries assistants through DataForSEO
    - StubProviderQueryAdapter: Deterministic results for testing
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Adapter name identifier."""
        ...

    @abstractmethod
    async def check(
        self,
        question: str,
        domain: str,
        brand_name: str | None,
        provider: LLMProvider,
        timeout: float,
    ) -> CheckOutcome:
        """Ask one provider one question.

        Args:
            question: Natural-language question posed to the assistant
            domain: Website domain whose citation we look for
            brand_name: Business name whose mention we look for
            provider: Assistant to query
            timeout: Seconds allowed for the whole call, retries included

        Returns:
            CheckOutcome describing citation and mention

        Raises:
            ProviderError: If no outcome could be obtained
        """
        ...

    async def health_check(self) -> bool:
        """Check if the adapter is available.

        Returns:
            True if adapter is operational
        """
        return True

    async def aclose(self) -> None:
        """Release network resources held by the adapter."""
        return None
