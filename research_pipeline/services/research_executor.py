"""
Research Executor
-----------------
Fans each research question out to every configured research provider,
merges the returned sources (URL dedup, first wins), ranks them by relevance,
truncates to the per-question budget and, in deep mode, enriches the top
sources that lack full content with a page fetch.

Concurrency is bounded across questions by a semaphore; providers for one
question run concurrently. Result order always follows question order.
"""

from __future__ import annotations

import asyncio
import math
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, TYPE_CHECKING

import structlog

from research_pipeline.core.config import PipelineConfig
from research_pipeline.core.exceptions import (
    NoProvidersConfiguredError,
    ProviderError,
    ResearchExhaustedError,
)
from research_pipeline.models.base import SourceType
from research_pipeline.models.research import (
    ResearchReport,
    ResearchResult,
    ResearchSource,
    ResearchStats,
)
from research_pipeline.services.research_providers import (
    ProviderSearchResult,
    ResearchProvider,
    SearchOptions,
    build_research_providers,
)
from research_pipeline.services.source_deduplicator import SourceDeduplicator
from research_pipeline.utils.otel import otel_span

if TYPE_CHECKING:
    from research_pipeline.services.progress import CancellationToken

logger = structlog.get_logger(__name__)

QuestionCallback = Callable[[int, int, ResearchResult], Awaitable[None]]

# Search result limits per provider call
SEARCH_LIMIT = 5
SEARCH_LIMIT_DEEP = 15


def question_confidence(source_count: int, has_synthesis: bool) -> float:
    return round(min(0.95, 0.5 + 0.05 * source_count + (0.2 if has_synthesis else 0.0)), 4)


class _CallLedger:
    """Per-run provider call/failure counters."""

    def __init__(self) -> None:
        self.calls: Dict[str, int] = {}
        self.failures: Dict[str, int] = {}
        self.successes = 0
        self.deep_fetches = 0

    def record(self, provider: str, ok: bool) -> None:
        self.calls[provider] = self.calls.get(provider, 0) + 1
        if ok:
            self.successes += 1
        else:
            self.failures[provider] = self.failures.get(provider, 0) + 1


class ResearchExecutor:
    def __init__(
        self,
        providers: Sequence[ResearchProvider],
        *,
        max_sources: int = 20,
        max_sources_deep: int = 50,
        deep_fetch_count: int = 3,
        concurrency: int = 4,
        deduplicator: Optional[SourceDeduplicator] = None,
    ) -> None:
        self.providers = [p for p in providers if p.is_configured()]
        self.max_sources = max_sources
        self.max_sources_deep = max_sources_deep
        self.deep_fetch_count = deep_fetch_count
        self.concurrency = max(1, concurrency)
        self.deduplicator = deduplicator or SourceDeduplicator()

    @classmethod
    def from_config(
        cls,
        config: PipelineConfig,
        providers: Optional[Sequence[ResearchProvider]] = None,
    ) -> "ResearchExecutor":
        return cls(
            providers if providers is not None else build_research_providers(config),
            max_sources=config.max_sources,
            max_sources_deep=config.max_sources_deep,
            deep_fetch_count=config.deep_fetch_count,
            concurrency=config.research_concurrency,
        )

    def is_configured(self) -> bool:
        return bool(self.providers)

    async def aclose(self) -> None:
        for provider in self.providers:
            await provider.aclose()

    async def execute(
        self,
        questions: Sequence[str],
        *,
        deep: bool = False,
        max_sources: Optional[int] = None,
        domain_filter: Optional[List[str]] = None,
        cancel: Optional["CancellationToken"] = None,
        on_question_done: Optional[QuestionCallback] = None,
    ) -> ResearchReport:
        if not self.providers:
            raise NoProvidersConfiguredError()
        questions = [q for q in questions if q and q.strip()]
        if not questions:
            return ResearchReport()

        budget = max_sources or (self.max_sources_deep if deep else self.max_sources)
        per_question = max(1, math.ceil(budget / len(questions)))
        options = SearchOptions(
            recency_window="month",
            domain_filter=list(domain_filter or []),
            result_limit=SEARCH_LIMIT_DEEP if deep else SEARCH_LIMIT,
            deep=deep,
        )
        ledger = _CallLedger()
        semaphore = asyncio.Semaphore(self.concurrency)
        done = 0

        logger.info(
            "Research execution started",
            questions=len(questions),
            providers=[p.name for p in self.providers],
            deep=deep,
            per_question_limit=per_question,
        )

        async def _run(question: str) -> ResearchResult:
            nonlocal done
            async with semaphore:
                result = await self._research_question(question, options, per_question, deep, ledger, cancel)
            done += 1
            if on_question_done is not None:
                await on_question_done(done, len(questions), result)
            return result

        results: List[ResearchResult] = list(await asyncio.gather(*(_run(q) for q in questions)))

        if ledger.successes == 0:
            raise ResearchExhaustedError(
                "All research providers failed for every question",
                user_message="Research failed: every research provider returned an error",
                details={"provider_failures": dict(ledger.failures)},
            )

        total_sources = sum(len(r.sources) for r in results)
        stats = ResearchStats(
            total_sources=total_sources,
            average_confidence=round(sum(r.confidence for r in results) / len(results), 4),
            provider_calls=dict(ledger.calls),
            provider_failures=dict(ledger.failures),
            deep_fetches=ledger.deep_fetches,
        )
        logger.info(
            "Research execution complete",
            total_sources=total_sources,
            average_confidence=stats.average_confidence,
            provider_calls=stats.provider_calls,
            provider_failures=stats.provider_failures,
        )
        return ResearchReport(results=results, stats=stats)

    # ────────────────────────────────────────────────────────────
    #  Per-question work
    # ────────────────────────────────────────────────────────────
    async def _research_question(
        self,
        question: str,
        options: SearchOptions,
        limit: int,
        deep: bool,
        ledger: _CallLedger,
        cancel: Optional["CancellationToken"],
    ) -> ResearchResult:
        outcomes = await asyncio.gather(
            *(self._search_one(p, question, options, ledger, cancel) for p in self.providers)
        )

        merged: List[ResearchSource] = []
        synthesis: Optional[str] = None
        for outcome in outcomes:
            if outcome is None:
                continue
            merged.extend(outcome.sources)
            if synthesis is None and outcome.synthesis:
                synthesis = outcome.synthesis

        ranked = self.deduplicator.merge(merged, limit)
        if deep and ranked:
            ranked = await self._deep_fetch(ranked, ledger, cancel)

        return ResearchResult(
            question=question,
            sources=ranked,
            synthesis=synthesis,
            confidence=question_confidence(len(ranked), bool(synthesis)),
        )

    async def _search_one(
        self,
        provider: ResearchProvider,
        question: str,
        options: SearchOptions,
        ledger: _CallLedger,
        cancel: Optional["CancellationToken"],
    ) -> Optional[ProviderSearchResult]:
        if cancel is not None:
            cancel.raise_if_cancelled()
        with otel_span("research.search", {"provider": provider.name, "deep": options.deep}):
            try:
                result = await provider.search(question, options)
            except ProviderError as exc:
                ledger.record(provider.name, ok=False)
                logger.warning(
                    "Research provider failed for question",
                    provider=provider.name,
                    status=exc.status,
                    error=str(exc),
                    question=question[:80],
                )
                return None
            except Exception as exc:
                ledger.record(provider.name, ok=False)
                logger.warning(
                    "Research provider raised unexpectedly",
                    provider=provider.name,
                    error=str(exc),
                    error_type=type(exc).__name__,
                    question=question[:80],
                    exc_info=True,
                )
                return None
        ledger.record(provider.name, ok=True)
        return result

    async def _deep_fetch(
        self,
        ranked: List[ResearchSource],
        ledger: _CallLedger,
        cancel: Optional["CancellationToken"],
    ) -> List[ResearchSource]:
        fetcher = next((p for p in self.providers if p.supports_fetch), None)
        if fetcher is None:
            return ranked

        targets: List[Tuple[int, ResearchSource]] = [
            (i, s) for i, s in enumerate(ranked) if not s.content
        ][: self.deep_fetch_count]

        async def _fetch(index: int, source: ResearchSource) -> Tuple[int, Optional[ResearchSource]]:
            if cancel is not None:
                cancel.raise_if_cancelled()
            try:
                page = await fetcher.fetch(source.url)
            except Exception as exc:
                ledger.record(f"{fetcher.name}_fetch", ok=False)
                logger.info(
                    "Deep fetch failed, keeping snippet",
                    url=source.url,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                return index, None
            ledger.record(f"{fetcher.name}_fetch", ok=True)
            ledger.deep_fetches += 1
            return index, source.model_copy(
                update={
                    "content": page.content,
                    "source_type": SourceType.CRAWL,
                    "snippet": source.snippet or page.description,
                }
            )

        enriched = list(ranked)
        for index, updated in await asyncio.gather(*(_fetch(i, s) for i, s in targets)):
            if updated is not None:
                enriched[index] = updated
        return enriched


__all__ = ["ResearchExecutor", "question_confidence"]
