"""DataForSEO provider query adapter.

ChatGPT is queried through the LLM scraper, Claude/Gemini/Perplexity through
the LLM Responses API (with web search enabled so answers carry links), and
Google AI Overview through the organic SERP endpoint.
"""

import asyncio
import base64
import re
from typing import Any
from urllib.parse import urlparse

import httpx

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
from visibility_engine.config import settings
from visibility_engine.domain.enums import LLMProvider
from visibility_engine.logging import get_logger

logger = get_logger(__name__)

DATAFORSEO_OK = 20000
MAX_SNIPPET_LENGTH = 500

CHATGPT_SCRAPER_ENDPOINT = "/ai_optimization/chat_gpt/llm_scraper/live/advanced"
SERP_ENDPOINT = "/serp/google/organic/live/advanced"
LLM_RESPONSES_ENDPOINTS = {
    LLMProvider.CLAUDE: "/ai_optimization/claude/llm_responses/live",
    LLMProvider.GEMINI: "/ai_optimization/gemini/llm_responses/live",
    LLMProvider.PERPLEXITY: "/ai_optimization/perplexity/llm_responses/live",
}
LLM_RESPONSES_PARAMS: dict[LLMProvider, dict[str, Any]] = {
    LLMProvider.CLAUDE: {"model_name": "claude-sonnet-4-0", "web_search": True},
    LLMProvider.GEMINI: {"model_name": "gemini-2.0-flash", "web_search": True},
    LLMProvider.PERPLEXITY: {"model_name": "sonar"},
}

# (domain, url, title) in response order
RawCitation = tuple[str, str | None, str | None]

_BRAND_SUFFIX = re.compile(r"\s*(llc|inc|corp|ltd|co|company|corporation)\.?$", re.IGNORECASE)


def normalize_domain(domain: str) -> str:
    value = domain.strip().lower()
    value = re.sub(r"^https?://", "", value)
    value = re.sub(r"^www\.", "", value)
    return value.split("/")[0]


def extract_domain(url: str) -> str:
    host = urlparse(url).hostname if "://" in url else None
    return normalize_domain(host or url)


def is_domain_match(source: str | None, target: str) -> bool:
    """Exact or subdomain match, in either direction."""
    if not source or not target:
        return False
    src = normalize_domain(source)
    tgt = normalize_domain(target)
    return src == tgt or src.endswith(f".{tgt}") or tgt.endswith(f".{src}")


def find_brand_position(text: str, brand_name: str) -> int:
    """Index of the brand in text (case-insensitive), or -1."""
    haystack = text.lower()
    brand = brand_name.lower().strip()
    if not brand:
        return -1
    index = haystack.find(brand)
    if index != -1:
        return index
    # "Acme Plumbing LLC" should match "Acme Plumbing"
    stripped = _BRAND_SUFFIX.sub("", brand).strip()
    if len(stripped) > 2:
        return haystack.find(stripped)
    return -1


def is_brand_mentioned(text: str | None, brand_name: str | None) -> bool:
    if not text or not brand_name:
        return False
    return find_brand_position(text, brand_name) != -1


def extract_snippet(
    text: str | None, brand_name: str | None, max_length: int = MAX_SNIPPET_LENGTH
) -> str | None:
    """Snippet of the response, centred on the brand mention when there is one."""
    if not text:
        return None
    position = find_brand_position(text, brand_name) if brand_name else -1
    if position == -1:
        return text[:max_length]
    start = max(0, position - max_length // 2)
    end = min(len(text), start + max_length)
    start = max(0, end - max_length)
    snippet = text[start:end]
    if start > 0:
        snippet = "..." + snippet[3:]
    if end < len(text):
        snippet = snippet[:-3] + "..."
    return snippet


class DataForSEOProviderQueryAdapter(ProviderQueryAdapter):
    """Queries AI assistants through the DataForSEO AI Optimization APIs."""

    def __init__(
        self,
        login: str | None = None,
        password: str | None = None,
        base_url: str | None = None,
        max_attempts: int | None = None,
        backoff_seconds: float | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.login = login or settings.dataforseo_login
        self.password = password or settings.dataforseo_password
        self.base_url = (base_url or settings.dataforseo_base_url).rstrip("/")
        self.max_attempts = max(1, max_attempts or settings.adapter_max_attempts)
        self.backoff_seconds = (
            settings.adapter_backoff_seconds if backoff_seconds is None else backoff_seconds
        )
        self._client = client

        if not self.login or not self.password:
            logger.warning("DataForSEO credentials not configured")

    @property
    def name(self) -> str:
        return "dataforseo"

    def _auth_header(self) -> str:
        token = base64.b64encode(f"{self.login}:{self.password}".encode()).decode()
        return f"Basic {token}"

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=120.0)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()

    async def health_check(self) -> bool:
        """Check DataForSEO credentials against the user data endpoint."""
        if not self.login or not self.password:
            return False
        try:
            response = await self._get_client().get(
                f"{self.base_url}/appendix/user_data",
                headers={"Authorization": self._auth_header()},
                timeout=10.0,
            )
            return response.status_code == 200
        except httpx.HTTPError:
            return False

    async def check(
        self,
        question: str,
        domain: str,
        brand_name: str | None,
        provider: LLMProvider,
        timeout: float,
    ) -> CheckOutcome:
        """Ask one provider one question and look for our domain and brand."""
        if not self.login or not self.password:
            raise ProviderUnavailableError(provider, "DataForSEO credentials not configured")

        endpoint, payload = self._build_request(question, provider)
        task = await self._post_with_retry(endpoint, payload, provider, timeout)
        result = (task.get("result") or [None])[0]
        if not isinstance(result, dict):
            raise ProviderResponseError(provider, "No result in task")

        try:
            if provider == LLMProvider.CHATGPT:
                citations, text = self._parse_chatgpt(result)
            elif provider == LLMProvider.AI_OVERVIEW:
                citations, text = self._parse_ai_overview(result)
            else:
                citations, text = self._parse_llm_responses(result)
            return self._build_outcome(
                citations, text, domain, brand_name, task.get("cost") or 0.0
            )
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            logger.warning(
                "dataforseo_malformed_result",
                provider=str(provider),
                error=str(e),
            )
            raise ProviderResponseError(provider, f"Malformed response: {e}") from e

    def _build_request(
        self, question: str, provider: LLMProvider
    ) -> tuple[str, list[dict[str, Any]]]:
        if provider == LLMProvider.CHATGPT:
            return CHATGPT_SCRAPER_ENDPOINT, [
                {
                    "keyword": question,
                    "location_code": settings.dataforseo_location_code,
                    "language_code": settings.dataforseo_language_code,
                }
            ]
        if provider == LLMProvider.AI_OVERVIEW:
            return SERP_ENDPOINT, [
                {
                    "keyword": question,
                    "location_code": settings.dataforseo_location_code,
                    "language_code": settings.dataforseo_language_code,
                    "load_async_ai_overview": True,
                }
            ]
        if provider in LLM_RESPONSES_ENDPOINTS:
            return LLM_RESPONSES_ENDPOINTS[provider], [
                {"user_prompt": question, **LLM_RESPONSES_PARAMS[provider]}
            ]
        raise ProviderUnavailableError(provider, f"Unsupported provider: {provider}")

    async def _post_with_retry(
        self,
        endpoint: str,
        payload: list[dict[str, Any]],
        provider: LLMProvider,
        timeout: float,
    ) -> dict[str, Any]:
        """POST with exponential backoff on rate limits, 5xx and timeouts."""
        last_error: ProviderError | None = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await self._post(endpoint, payload, provider, timeout)
            except ProviderError as e:
                # Auth, payment and malformed responses will not fix themselves
                if not e.retryable:
                    raise
                last_error = e

            if attempt < self.max_attempts:
                delay = self.backoff_seconds * (2 ** (attempt - 1))
                logger.warning(
                    "dataforseo_retry",
                    provider=str(provider),
                    attempt=attempt,
                    delay=delay,
                    error=str(last_error),
                )
                await asyncio.sleep(delay)

        if last_error is None:
            raise ProviderResponseError(provider, "No attempt was made")
        raise last_error

    async def _post(
        self,
        endpoint: str,
        payload: list[dict[str, Any]],
        provider: LLMProvider,
        timeout: float,
    ) -> dict[str, Any]:
        logger.debug(
            "dataforseo_request",
            provider=str(provider),
            endpoint=endpoint,
            question=payload[0].get("keyword") or payload[0].get("user_prompt"),
        )
        try:
            response = await self._get_client().post(
                f"{self.base_url}{endpoint}",
                headers={
                    "Authorization": self._auth_header(),
                    "Content-Type": "application/json",
                },
                json=payload,
                timeout=timeout,
            )
        except httpx.TimeoutException as e:
            raise ProviderTimeoutError(provider, f"Request timeout ({timeout:.0f} seconds)") from e
        except httpx.TransportError as e:
            raise ProviderUnavailableError(
                provider, f"Connection failed: {e}", retryable=True
            ) from e

        if response.status_code == 429:
            raise ProviderRateLimitedError(provider, "Rate limit exceeded")
        if response.status_code in (401, 403):
            raise ProviderUnavailableError(provider, "Authentication failed")
        if response.status_code == 402:
            raise ProviderUnavailableError(provider, "DataForSEO account out of funds")
        if response.status_code >= 500:
            raise ProviderUnavailableError(
                provider,
                f"Service temporarily unavailable ({response.status_code})",
                retryable=True,
            )
        if response.status_code >= 400:
            raise ProviderResponseError(provider, f"Request failed ({response.status_code})")

        try:
            data = response.json()
        except ValueError as e:
            raise ProviderResponseError(provider, "Response was not valid JSON") from e

        if not isinstance(data, dict):
            raise ProviderResponseError(provider, "Response was not a JSON object")

        if data.get("status_code") != DATAFORSEO_OK:
            raise ProviderResponseError(provider, f"API error: {data.get('status_message')}")

        tasks = data.get("tasks") or []
        if not isinstance(tasks, list) or not tasks or not isinstance(tasks[0], dict):
            raise ProviderResponseError(provider, "No task returned from API")
        task: dict[str, Any] = tasks[0]
        task_status = task.get("status_code")
        if task_status != DATAFORSEO_OK:
            message = task.get("status_message") or "unknown error"
            # 40202: rate limit at the task level
            if task_status == 40202:
                raise ProviderRateLimitedError(provider, message)
            raise ProviderResponseError(provider, f"Task error {task_status}: {message}")

        logger.info(
            "dataforseo_response",
            provider=str(provider),
            cost=task.get("cost"),
        )
        return task

    @staticmethod
    def _parse_chatgpt(result: dict[str, Any]) -> tuple[list[RawCitation], str | None]:
        citations = [
            (
                source.get("domain") or extract_domain(source.get("url") or ""),
                source.get("url"),
                source.get("title"),
            )
            for source in result.get("sources") or []
        ]
        text = result.get("markdown")
        if not text:
            items = result.get("items") or []
            if items and isinstance(items[0], dict):
                text = items[0].get("content")
        return citations, text

    @staticmethod
    def _parse_llm_responses(result: dict[str, Any]) -> tuple[list[RawCitation], str | None]:
        citations: list[RawCitation] = []
        parts: list[str] = []
        for item in result.get("items") or []:
            for section in item.get("sections") or []:
                if section.get("text"):
                    parts.append(section["text"])
                for link in section.get("links") or []:
                    if link.get("url"):
                        citations.append(
                            (
                                extract_domain(link["url"]),
                                link["url"],
                                link.get("title") or link.get("text"),
                            )
                        )
        return citations, "".join(parts) or None

    @staticmethod
    def _parse_ai_overview(result: dict[str, Any]) -> tuple[list[RawCitation], str | None]:
        overview = next(
            (item for item in result.get("items") or [] if item.get("type") == "ai_overview"),
            None,
        )
        # No AI Overview for this query: a valid, uncited answer
        if overview is None:
            return [], None

        references = overview.get("references") or []
        citations: list[RawCitation] = []
        for ref in references:
            ref_domain = ref.get("domain") or (extract_domain(ref["url"]) if ref.get("url") else "")
            if ref_domain:
                citations.append((ref_domain, ref.get("url"), ref.get("title")))

        parts = [sub["text"] for sub in overview.get("items") or [] if sub.get("text")]
        text = "\n\n".join(parts) or overview.get("text")
        if not text:
            text = "\n\n".join(ref["text"] for ref in references if ref.get("text")) or None
        return citations, text

    @staticmethod
    def _build_outcome(
        raw_citations: list[RawCitation],
        text: str | None,
        domain: str,
        brand_name: str | None,
        cost: float,
    ) -> CheckOutcome:
        citations = [
            Citation(
                domain=source_domain,
                url=url,
                title=title,
                position=index,
                is_ours=is_domain_match(source_domain, domain),
            )
            for index, (source_domain, url, title) in enumerate(raw_citations, start=1)
        ]
        ours = next((citation for citation in citations if citation.is_ours), None)

        return CheckOutcome(
            cited=ours is not None,
            mentioned=is_brand_mentioned(text, brand_name),
            citation_position=ours.position if ours else None,
            citation_url=ours.url if ours else None,
            total_citations=len(citations),
            response_snippet=extract_snippet(text, brand_name),
            cost_usd=float(cost),
            citations=tuple(citations),
        )
