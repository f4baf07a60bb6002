"""Shared fakes and fixtures for the pipeline tests.

Nothing here touches the network: completion providers, research providers
and the polled agent are replaced with scripted in-memory fakes.
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import pytest

# Make the package importable when tests run from a plain checkout
_ROOT = Path(__file__).resolve().parents[1]
if str(_ROOT) not in sys.path:
    sys.path.insert(0, str(_ROOT))

from research_pipeline.core.config import PipelineConfig  # noqa: E402
from research_pipeline.core.exceptions import ProviderError  # noqa: E402
from research_pipeline.models.base import SourceType  # noqa: E402
from research_pipeline.models.research import ResearchSource  # noqa: E402
from research_pipeline.services.budget_gate import InMemoryCreditLedger  # noqa: E402
from research_pipeline.services.completion_gateway import (  # noqa: E402
    CompletionGateway,
    CompletionResult,
)
from research_pipeline.services.pipeline_orchestrator import PipelineOrchestrator  # noqa: E402
from research_pipeline.services.polled_agent import AgentStatus, PolledAgentRunner  # noqa: E402
from research_pipeline.services.research_executor import ResearchExecutor  # noqa: E402
from research_pipeline.services.research_providers import (  # noqa: E402
    FetchedPage,
    ProviderSearchResult,
    ResearchProvider,
    SearchOptions,
)

DENIM_PROMPT = "Find sustainable denim suppliers in Europe with low MOQ"

SYNTHESIS_TEXT = (
    "## Overview\n"
    "Several European mills offer recycled denim [1] with low minimums [2, 3].\n\n"
    "| Supplier | MOQ |\n"
    "|---|---|\n"
    "| Inline Mill | 50 |\n\n"
    "## Next steps\n"
    "Request samples from the shortlisted mills."
)


def default_responses() -> Dict[str, Any]:
    """Tool arguments (keyed by tool name) and plain text (``text``) for a healthy run."""
    return {
        "classify_intent": {
            "primary_intent": "professional_business",
            "confidence": 0.9,
            "is_ambiguous": False,
            "tone": "curious",
        },
        "interpret_task": {
            "intent": "Find sustainable denim suppliers in Europe with low minimum order quantities",
            "domains": ["supply_chain"],
            "requires_real_time_research": True,
            "research_depth": "standard",
            "outputs": ["text"],
            "execution_plan": ["web_research", "analysis"],
            "search_queries": ["sustainable denim suppliers Europe low MOQ"],
        },
        "reason_task": {
            "task_summary": "Shortlist sustainable European denim suppliers with low MOQ",
            "reasoning_objectives": ["Identify suppliers", "Compare MOQs"],
            "research_questions": [
                "Which European mills produce sustainable denim?",
                "Which denim suppliers in Europe accept low MOQ orders?",
            ],
            "required_data_entities": ["suppliers", "certifications"],
            "logic_steps": ["Search", "Compare", "Summarise"],
            "quality_criteria": ["Named suppliers"],
            "risk_flags": ["none"],
        },
        "structure_outputs": {
            "tables": [
                {
                    "name": "Supplier shortlist",
                    "columns": ["Supplier", "Country", "MOQ"],
                    "rows": [["Mill A", "Italy", 100], ["Mill B", "Portugal", "300 m"]],
                },
                {"name": "Broken", "columns": ["A", "B"], "rows": [["only one cell"]]},
            ],
            "report_outline": [{"section": "Suppliers", "content": "", "key_points": ["Mill A"]}],
            "key_findings": ["Mill A accepts 100 m minimum orders"],
        },
        "text": SYNTHESIS_TEXT,
    }


class FakeCompletionProvider:
    """Scripted completion backend.

    ``responses`` maps a tool name (or ``"text"`` for plain completions) to a
    dict of tool arguments, a string, an exception to raise, or a callable
    ``(system_prompt, user_prompt) -> value``. ``error`` is raised for every
    call when set.
    """

    def __init__(
        self,
        name: str = "primary",
        model: str = "test-model",
        responses: Optional[Dict[str, Any]] = None,
        error: Optional[Exception] = None,
    ) -> None:
        self.name = name
        self.model = model
        self.responses = default_responses() if responses is None else responses
        self.error = error
        self.calls: List[str] = []

    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        tools=None,
        tool_choice=None,
        max_tokens: int = 4000,
        temperature: float = 0.3,
    ) -> CompletionResult:
        key = tools[0]["function"]["name"] if tools else "text"
        self.calls.append(key)
        if self.error is not None:
            raise self.error
        value = self.responses.get(key)
        if isinstance(value, Exception):
            raise value
        if callable(value):
            value = value(system_prompt, user_prompt)
        if key == "text":
            return CompletionResult(content=value or "", provider=self.name, model=self.model)
        return CompletionResult(content="", provider=self.name, model=self.model, tool_arguments=value)


def http_error(status: Optional[int], provider: str = "primary") -> ProviderError:
    return ProviderError(f"{provider} returned HTTP {status}", provider=provider, status=status)


def make_source(url: str, score: float, provider: str = "search", content: Optional[str] = None) -> ResearchSource:
    return ResearchSource(
        url=url,
        title=url.rsplit("/", 1)[-1] or url,
        snippet=f"snippet for {url}",
        content=content,
        source_type=SourceType.SEARCH,
        relevance_score=score,
        provider_used=provider,
    )


class FakeResearchProvider(ResearchProvider):
    """In-memory research provider.

    ``results`` is either a fixed ``ProviderSearchResult`` or a callable
    ``(query) -> ProviderSearchResult``. ``error`` is raised by every search.
    """

    def __init__(
        self,
        name: str,
        results: Any = None,
        *,
        error: Optional[Exception] = None,
        supports_fetch: bool = False,
        fetch_error: Optional[Exception] = None,
        configured: bool = True,
    ) -> None:
        self.name = name
        self.results = results
        self.error = error
        self.supports_fetch = supports_fetch
        self.fetch_error = fetch_error
        self.configured = configured
        self.queries: List[str] = []
        self.options: List[SearchOptions] = []
        self.fetched: List[str] = []

    def is_configured(self) -> bool:
        return self.configured

    async def search(self, query: str, options: SearchOptions) -> ProviderSearchResult:
        self.queries.append(query)
        self.options.append(options)
        if self.error is not None:
            raise self.error
        if callable(self.results):
            return self.results(query)
        return self.results or ProviderSearchResult()

    async def fetch(self, url: str) -> FetchedPage:
        self.fetched.append(url)
        if self.fetch_error is not None:
            raise self.fetch_error
        return FetchedPage(url=url, content=f"full content of {url}", title="Fetched")


def per_query_sources(provider: str, base_score: float) -> Callable[[str], ProviderSearchResult]:
    """Sources whose URLs depend on the query, with one URL shared by every query."""

    def _results(query: str) -> ProviderSearchResult:
        slug = abs(hash(query)) % 10_000
        return ProviderSearchResult(
            sources=[
                make_source(f"https://{provider}.test/{slug}/a", base_score, provider),
                make_source("https://shared.test/denim-report", base_score - 0.1, provider),
                make_source(f"https://{provider}.test/{slug}/b", base_score - 0.2, provider),
            ],
            synthesis=f"{provider} synthesis for {query}",
        )

    return _results


class FakeAgentClient:
    """Polled agent that replays a list of statuses (the last one repeats)."""

    def __init__(
        self,
        statuses: List[Any],
        *,
        finalize_output: str = "",
        submit_error: Optional[Exception] = None,
    ) -> None:
        self.statuses = list(statuses)
        self.finalize_output = finalize_output
        self.submit_error = submit_error
        self.polls = 0
        self.finalized = 0
        self.cancelled = 0

    async def submit(self, prompt: str, profile: str) -> str:
        if self.submit_error is not None:
            raise self.submit_error
        return "task-1"

    async def poll(self, task_id: str) -> AgentStatus:
        index = min(self.polls, len(self.statuses) - 1)
        self.polls += 1
        status = self.statuses[index]
        if isinstance(status, Exception):
            raise status
        return status

    async def finalize(self, task_id: str) -> str:
        self.finalized += 1
        return self.finalize_output

    async def cancel(self, task_id: str) -> None:
        self.cancelled += 1


async def no_sleep(_: float) -> None:
    return None


@pytest.fixture
def config() -> PipelineConfig:
    return PipelineConfig()


@pytest.fixture
def ledger() -> InMemoryCreditLedger:
    return InMemoryCreditLedger({"user-1": 100, "user-low": 9})


@pytest.fixture
def primary() -> FakeCompletionProvider:
    return FakeCompletionProvider("primary", "model-a")


@pytest.fixture
def gateway(primary) -> CompletionGateway:
    return CompletionGateway([primary])


@pytest.fixture
def research_providers() -> List[FakeResearchProvider]:
    return [
        FakeResearchProvider("search", per_query_sources("search", 0.9), supports_fetch=True),
        FakeResearchProvider("answers", per_query_sources("answers", 0.8)),
    ]


@pytest.fixture
def make_orchestrator(config, ledger, research_providers):
    def _make(
        gateway: CompletionGateway,
        providers: Optional[List[ResearchProvider]] = None,
        agent_client: Optional[FakeAgentClient] = None,
    ) -> PipelineOrchestrator:
        executor = ResearchExecutor.from_config(
            config, providers if providers is not None else research_providers
        )
        runner = PolledAgentRunner(
            agent_client or FakeAgentClient([AgentStatus("completed", "agent report", 3)]),
            ledger,
            poll_interval=0,
            max_stall_count=config.max_stall_count,
            sleep=no_sleep,
        )
        return PipelineOrchestrator(
            config,
            ledger,
            gateway=gateway,
            research_executor=executor,
            agent_runner=runner,
        )

    return _make
