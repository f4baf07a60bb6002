from unittest.mock import AsyncMock

import httpx
import pytest

from research_pipeline.core.exceptions import ProviderError
from research_pipeline.services.research_providers import (
    FirecrawlProvider,
    PerplexityProvider,
    SearchOptions,
)


def _perplexity(payload, status=200):
    provider = PerplexityProvider("pplx-key")
    provider._post = AsyncMock(return_value=httpx.Response(status, json=payload))
    return provider


@pytest.mark.asyncio
async def test_perplexity_maps_answer_and_citations():
    provider = _perplexity(
        {
            "choices": [{"message": {"content": " Mills in Portugal lead. "}}],
            "citations": ["https://a.test", {"url": "https://b.test"}, 42, {"title": "no url"}],
        }
    )
    result = await provider.search("denim mills", SearchOptions())

    assert result.synthesis == "Mills in Portugal lead."
    assert [s.url for s in result.sources] == ["https://a.test", "https://b.test"]
    assert result.sources[0].relevance_score > result.sources[1].relevance_score


@pytest.mark.asyncio
async def test_perplexity_non_object_payload_is_provider_error():
    with pytest.raises(ProviderError) as info:
        await _perplexity(["unexpected"]).search("q", SearchOptions())
    assert info.value.status == 502


@pytest.mark.asyncio
async def test_perplexity_tolerates_malformed_fields():
    result = await _perplexity({"choices": ["junk"], "citations": "https://a.test"}).search("q", SearchOptions())

    assert result.synthesis is None
    assert result.sources == []


@pytest.mark.asyncio
async def test_perplexity_http_error_status():
    with pytest.raises(ProviderError) as info:
        await _perplexity({"error": "rate limited"}, status=429).search("q", SearchOptions())
    assert info.value.is_quota_error


@pytest.mark.asyncio
async def test_firecrawl_skips_malformed_items():
    provider = FirecrawlProvider("fc-key")
    provider._post = AsyncMock(
        return_value={
            "data": [
                "junk",
                {"url": 5},
                {"title": "no url"},
                {"url": "https://mill.test", "title": "Mill", "description": "Low MOQ"},
            ]
        }
    )
    result = await provider.search("denim mills", SearchOptions())

    assert [s.url for s in result.sources] == ["https://mill.test"]
    assert result.sources[0].snippet == "Low MOQ"


@pytest.mark.asyncio
async def test_firecrawl_non_list_data_yields_no_sources():
    provider = FirecrawlProvider("fc-key")
    provider._post = AsyncMock(return_value={"data": {"url": "https://mill.test"}})

    result = await provider.search("q", SearchOptions())
    assert result.sources == []


@pytest.mark.asyncio
async def test_firecrawl_fetch_without_markdown_is_provider_error():
    provider = FirecrawlProvider("fc-key")
    provider._post = AsyncMock(return_value={"data": ["not", "a", "page"]})

    with pytest.raises(ProviderError):
        await provider.fetch("https://mill.test")
