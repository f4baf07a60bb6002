"""
Research providers
------------------
Async clients for the external research capabilities the executor fans out
to. Each provider exposes ``search(query, options)`` and, where supported,
``fetch(url)``; both raise ``ProviderError`` on failure so the executor can
drop a single provider's contribution without failing the question.

- PerplexityProvider: answer synthesis plus citation URLs (httpx).
- FirecrawlProvider: ranked web search and page scraping (aiohttp).
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import aiohttp
import httpx
import structlog

from research_pipeline.core.config import PipelineConfig
from research_pipeline.core.exceptions import ProviderError
from research_pipeline.models.base import SourceType
from research_pipeline.models.research import ResearchSource
from research_pipeline.utils.retry import get_provider_retry_decorator

logger = structlog.get_logger(__name__)

_provider_retry = get_provider_retry_decorator()


@dataclass
class SearchOptions:
    recency_window: Optional[str] = "month"
    domain_filter: List[str] = field(default_factory=list)
    result_limit: int = 5
    deep: bool = False


@dataclass
class ProviderSearchResult:
    sources: List[ResearchSource] = field(default_factory=list)
    synthesis: Optional[str] = None


@dataclass
class FetchedPage:
    url: str
    content: str
    title: str = ""
    description: str = ""


def _rank_score(base: float, index: int) -> float:
    """Position-decayed relevance, clamped into [0.05, 1.0]."""
    return round(max(0.05, min(1.0, base - 0.05 * index)), 4)


class ResearchProvider:
    """Interface shared by research providers."""

    name: str = "provider"
    supports_fetch: bool = False

    def is_configured(self) -> bool:
        raise NotImplementedError

    async def search(self, query: str, options: SearchOptions) -> ProviderSearchResult:
        raise NotImplementedError

    async def fetch(self, url: str) -> FetchedPage:
        raise ProviderError(f"{self.name} does not support fetch", provider=self.name, status=501)

    async def aclose(self) -> None:
        return None


# ────────────────────────────────────────────────────────────
#  Perplexity (httpx)
# ────────────────────────────────────────────────────────────
class PerplexityProvider(ResearchProvider):
    """Answer synthesis with citations via Perplexity chat completions."""

    name = "perplexity"

    SYSTEM_PROMPT = (
        "You are a professional research assistant. Provide factual, well-sourced "
        "information with specific details, numbers, and dates when available."
    )

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.perplexity.ai",
        model: str = "sonar-pro",
        timeout: float = 30.0,
    ) -> None:
        self.api_key = (api_key or "").strip()
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout

    def is_configured(self) -> bool:
        return bool(self.api_key)

    @_provider_retry
    async def _post(self, payload: Dict[str, Any]) -> httpx.Response:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(
                f"{self.base_url}/chat/completions",
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                json=payload,
            )

    async def search(self, query: str, options: SearchOptions) -> ProviderSearchResult:
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": self.SYSTEM_PROMPT},
                {"role": "user", "content": query},
            ],
            "max_tokens": 2000,
        }
        if options.recency_window:
            payload["search_recency_filter"] = options.recency_window
        if options.domain_filter:
            payload["search_domain_filter"] = list(options.domain_filter)

        try:
            resp = await self._post(payload)
        except httpx.HTTPError as exc:
            raise ProviderError(f"Perplexity request failed: {exc}", provider=self.name) from exc
        if resp.status_code >= 400:
            raise ProviderError(
                f"Perplexity API error: {resp.status_code}",
                provider=self.name,
                status=resp.status_code,
            )

        try:
            data = resp.json()
        except ValueError as exc:
            raise ProviderError("Perplexity returned invalid JSON", provider=self.name, status=502) from exc
        if not isinstance(data, dict):
            raise ProviderError("Perplexity returned an unexpected payload", provider=self.name, status=502)

        synthesis = ""
        choices = data.get("choices")
        if isinstance(choices, list) and choices and isinstance(choices[0], dict):
            message = choices[0].get("message")
            if isinstance(message, dict) and isinstance(message.get("content"), str):
                synthesis = message["content"]

        sources: List[ResearchSource] = []
        citations = data.get("citations")
        for idx, citation in enumerate(citations if isinstance(citations, list) else []):
            if isinstance(citation, dict):
                citation = citation.get("url")
            url = citation if isinstance(citation, str) else ""
            if not url:
                continue
            sources.append(
                ResearchSource(
                    url=url,
                    title=f"Source {idx + 1}",
                    snippet="",
                    source_type=SourceType.AI_SYNTHESIS,
                    relevance_score=_rank_score(0.8, idx),
                    provider_used=self.name,
                )
            )
        logger.debug("Perplexity search complete", query=query[:80], citations=len(sources))
        return ProviderSearchResult(sources=sources, synthesis=synthesis.strip() or None)


# ────────────────────────────────────────────────────────────
#  Firecrawl (aiohttp)
# ────────────────────────────────────────────────────────────
class FirecrawlProvider(ResearchProvider):
    """Web search and page scraping via Firecrawl."""

    name = "firecrawl"
    supports_fetch = True

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.firecrawl.dev/v1",
        timeout_seconds: float = 30.0,
    ) -> None:
        self.api_key = (api_key or "").strip()
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        # Session is created on demand so construction never touches the network
        self._session: Optional[aiohttp.ClientSession] = None

    def is_configured(self) -> bool:
        return bool(self.api_key)

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    async def aclose(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()

    @_provider_retry
    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        session = await self._ensure_session()
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        async with session.post(f"{self.base_url}{path}", headers=headers, json=payload) as resp:
            if resp.status >= 400:
                raise ProviderError(
                    f"Firecrawl {path} error: {resp.status}",
                    provider=self.name,
                    status=resp.status,
                )
            try:
                data = await resp.json(content_type=None)
            except (aiohttp.ContentTypeError, ValueError) as exc:
                raise ProviderError(
                    f"Firecrawl {path} returned invalid JSON",
                    provider=self.name,
                    status=502,
                ) from exc
        if not isinstance(data, dict):
            raise ProviderError(f"Firecrawl {path} returned an unexpected payload", provider=self.name, status=502)
        return data

    async def search(self, query: str, options: SearchOptions) -> ProviderSearchResult:
        payload: Dict[str, Any] = {"query": query, "limit": options.result_limit}
        if options.deep:
            payload["scrapeOptions"] = {"formats": ["markdown"]}
        try:
            data = await self._post("/search", payload)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise ProviderError(f"Firecrawl search failed: {exc}", provider=self.name) from exc

        sources: List[ResearchSource] = []
        items = data.get("data")
        for idx, item in enumerate(items if isinstance(items, list) else []):
            if not isinstance(item, dict):
                continue
            url = item.get("url")
            if not url or not isinstance(url, str):
                continue
            sources.append(
                ResearchSource(
                    url=url,
                    title=item.get("title") or f"Result {idx + 1}",
                    snippet=item.get("description") or "",
                    content=item.get("markdown") or None,
                    source_type=SourceType.SEARCH,
                    relevance_score=_rank_score(0.9, idx),
                    provider_used=self.name,
                )
            )
        logger.debug("Firecrawl search complete", query=query[:80], results=len(sources))
        return ProviderSearchResult(sources=sources)

    async def fetch(self, url: str) -> FetchedPage:
        payload = {"url": url, "formats": ["markdown"], "onlyMainContent": True, "waitFor": 3000}
        try:
            data = await self._post("/scrape", payload)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise ProviderError(f"Firecrawl scrape failed: {exc}", provider=self.name) from exc
        scraped = data.get("data") if isinstance(data.get("data"), dict) else data
        metadata = scraped.get("metadata")
        if not isinstance(metadata, dict):
            metadata = {}
        content = scraped.get("markdown")
        if not content or not isinstance(content, str):
            raise ProviderError(f"Firecrawl scrape returned no content for {url}", provider=self.name, status=204)
        return FetchedPage(
            url=url,
            content=content,
            title=metadata.get("title") or url,
            description=metadata.get("description") or "",
        )


def build_research_providers(config: PipelineConfig) -> List[ResearchProvider]:
    """Instantiate every provider the configuration has credentials for."""
    providers: List[ResearchProvider] = [
        PerplexityProvider(
            config.perplexity_api_key,
            base_url=config.perplexity_base_url,
            model=config.perplexity_model,
            timeout=config.research_timeout_seconds,
        ),
        FirecrawlProvider(
            config.firecrawl_api_key,
            base_url=config.firecrawl_base_url,
            timeout_seconds=config.research_timeout_seconds,
        ),
    ]
    return [p for p in providers if p.is_configured()]


__all__ = [
    "FetchedPage",
    "FirecrawlProvider",
    "PerplexityProvider",
    "ProviderSearchResult",
    "ResearchProvider",
    "SearchOptions",
    "build_research_providers",
]
