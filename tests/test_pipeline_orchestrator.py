import pytest
from unittest.mock import AsyncMock

from research_pipeline.models.base import Domain, PHASE_ORDER, PipelinePhase, ResearchDepth, RiskFlag
from research_pipeline.models.result import RunStatus
from research_pipeline.services.completion_gateway import CompletionGateway
from research_pipeline.services.polled_agent import AgentStatus
from research_pipeline.services.progress import CancellationToken, ProgressBroadcaster
from research_pipeline.services.research_providers import ProviderSearchResult
from research_pipeline.services.synthesis_generator import SUMMARY_TABLES_HEADER
from research_pipeline.utils.text import has_citation_markers

from conftest import (
    DENIM_PROMPT,
    FakeAgentClient,
    FakeCompletionProvider,
    FakeResearchProvider,
    default_responses,
    http_error,
    make_source,
)


async def _run(orchestrator, text=DENIM_PROMPT, user_id="user-1", **kwargs):
    broadcaster = ProgressBroadcaster("run-test")
    result = await orchestrator.run(text, user_id=user_id, broadcaster=broadcaster, **kwargs)
    return result, broadcaster


def _phases(broadcaster):
    return [e.phase for e in broadcaster.events]


def _assert_single_terminal(broadcaster, phase):
    events = broadcaster.events
    terminal = [e for e in events if e.is_terminal]
    assert len(terminal) == 1
    assert events[-1] is terminal[0]
    assert terminal[0].phase == phase
    progress = [e.progress for e in events]
    assert progress == sorted(progress)
    order = [PHASE_ORDER[e.phase] for e in events[:-1]]
    assert order == sorted(order)


@pytest.mark.asyncio
async def test_denim_request_end_to_end(make_orchestrator, gateway, ledger, research_providers):
    result, broadcaster = await _run(make_orchestrator(gateway))

    assert result.status == RunStatus.COMPLETED
    _assert_single_terminal(broadcaster, PipelinePhase.COMPLETED)
    assert broadcaster.terminal_event.progress == 100
    assert _phases(broadcaster)[0] == PipelinePhase.INTERPRETING
    assert PipelinePhase.RESEARCHING in _phases(broadcaster)

    assert set(result.task_plan.domains) >= {Domain.SUPPLY_CHAIN, Domain.SUSTAINABILITY, Domain.TEXTILE}
    assert RiskFlag.DATA_FRESHNESS in result.blueprint.risk_flags
    assert not has_citation_markers(result.report)
    assert result.report.index("## Next steps") < result.report.index(SUMMARY_TABLES_HEADER)
    assert "| Mill A | Italy | 100 |" in result.report
    assert "Broken" not in result.report

    urls = [s.url for s in result.sources]
    assert len(urls) == len(set(urls))
    assert result.metadata.model_used_label == "primary:model-a"
    assert result.metadata.credits_used == 11
    assert 0.5 <= result.metadata.confidence <= 0.95
    assert await ledger.check_balance("user-1") == 89
    assert [e.description for e in ledger.entries] == ["Research pipeline (standard)"]
    assert all(len(p.queries) == 2 for p in research_providers)


@pytest.mark.asyncio
async def test_budget_confirmation_is_first_event(make_orchestrator, gateway):
    _, broadcaster = await _run(make_orchestrator(gateway))

    first = broadcaster.events[0]
    assert first.data["budget_confirmation"]["estimated_credits"] == {"min": 8, "max": 11}
    assert first.data["budget_confirmation"]["current_balance"] == 100


@pytest.mark.asyncio
async def test_personal_request_skips_research(make_orchestrator, ledger, research_providers):
    responses = default_responses()
    responses["classify_intent"] = {
        "primary_intent": "personal_emotional",
        "confidence": 0.9,
        "is_ambiguous": False,
        "tone": "neutral",
    }
    responses["text"] = "## Executive Summary\nIt is normal to feel this way [1].\n\nTake it one day at a time."
    primary = FakeCompletionProvider(responses=responses)

    result, broadcaster = await _run(
        make_orchestrator(CompletionGateway([primary])),
        text="I feel anxious about my new job",
    )

    assert result.status == RunStatus.COMPLETED
    assert PipelinePhase.RESEARCHING not in _phases(broadcaster)
    assert all(p.queries == [] for p in research_providers)
    assert "structure_outputs" not in primary.calls
    assert result.report == "It is normal to feel this way.\n\nTake it one day at a time."
    assert result.metadata.credits_used == 8
    assert await ledger.check_balance("user-1") == 92


@pytest.mark.asyncio
async def test_ambiguous_request_returns_clarification(make_orchestrator, ledger, research_providers):
    responses = default_responses()
    responses["classify_intent"] = {
        "primary_intent": "general_factual",
        "confidence": 0.3,
        "is_ambiguous": True,
        "clarifying_question": "Which region and product category?",
        "tone": "neutral",
    }
    responses["text"] = "Happy to help. Which region and product category?"
    primary = FakeCompletionProvider(responses=responses)

    result, broadcaster = await _run(make_orchestrator(CompletionGateway([primary])), text="suppliers")

    assert result.status == RunStatus.CLARIFICATION
    assert result.report == "Happy to help. Which region and product category?"
    assert _phases(broadcaster) == [PipelinePhase.COMPLETED]
    assert broadcaster.terminal_event.data["clarification"] is True
    assert primary.calls == ["classify_intent", "text"]
    assert all(p.queries == [] for p in research_providers)
    assert await ledger.check_balance("user-1") == 99


@pytest.mark.asyncio
async def test_primary_not_found_falls_back_to_secondary(make_orchestrator, ledger):
    primary = FakeCompletionProvider("primary", "model-a", error=http_error(404, "primary"))
    secondary = FakeCompletionProvider("secondary", "model-b")

    result, broadcaster = await _run(make_orchestrator(CompletionGateway([primary, secondary])))

    assert result.status == RunStatus.COMPLETED
    assert result.metadata.model_used_label == "secondary:model-b"
    assert broadcaster.terminal_event.data["model_used"] == "secondary:model-b"
    assert len(primary.calls) == len(secondary.calls)


@pytest.mark.asyncio
async def test_deep_mode_fetches_content_and_charges_deep_cost(make_orchestrator, gateway, ledger, research_providers):
    result, _ = await _run(make_orchestrator(gateway), deep_mode=True)

    assert result.status == RunStatus.COMPLETED
    assert result.metadata.deep_mode
    assert result.metadata.credits_used == 18
    assert result.task_plan.research_depth == ResearchDepth.DEEP
    assert result.task_plan.estimated_credits == 15
    assert research_providers[0].fetched
    assert ledger.entries[-1].description == "Research pipeline (deep)"


@pytest.mark.asyncio
async def test_research_exhaustion_fails_without_charge(make_orchestrator, gateway, ledger):
    providers = [
        FakeResearchProvider("search", error=http_error(500, "search")),
        FakeResearchProvider("answers", error=http_error(None, "answers")),
    ]
    result, broadcaster = await _run(make_orchestrator(gateway, providers))

    assert result.status == RunStatus.FAILED
    _assert_single_terminal(broadcaster, PipelinePhase.FAILED)
    assert result.error["error_type"] == "ResearchExhaustedError"
    assert result.task_plan is not None
    assert result.blueprint is not None
    assert await ledger.check_balance("user-1") == 100
    assert ledger.entries == []


@pytest.mark.asyncio
async def test_configured_domain_filter_reaches_every_search(config, make_orchestrator, gateway, research_providers):
    config.research_domain_filter = ["textileexchange.org", "fashionunited.com"]
    result, _ = await _run(make_orchestrator(gateway))

    assert result.status == RunStatus.COMPLETED
    options = [o for p in research_providers for o in p.options]
    assert options
    assert all(o.domain_filter == ["textileexchange.org", "fashionunited.com"] for o in options)


@pytest.mark.asyncio
async def test_low_confidence_classification_asks_for_clarification(make_orchestrator, ledger, research_providers):
    responses = default_responses()
    responses["classify_intent"] = dict(responses["classify_intent"], confidence=0.4)
    primary = FakeCompletionProvider(responses=responses)

    result, _ = await _run(make_orchestrator(CompletionGateway([primary])), text="denim")

    assert result.status == RunStatus.CLARIFICATION
    assert all(p.queries == [] for p in research_providers)


@pytest.mark.asyncio
async def test_buggy_provider_does_not_fail_the_run(make_orchestrator, gateway, research_providers):
    providers = [research_providers[0], FakeResearchProvider("buggy", error=KeyError("citations"))]
    result, broadcaster = await _run(make_orchestrator(gateway, providers))

    assert result.status == RunStatus.COMPLETED
    _assert_single_terminal(broadcaster, PipelinePhase.COMPLETED)
    assert result.sources
    assert all(s.provider_used != "buggy" for s in result.sources)


@pytest.mark.asyncio
async def test_insufficient_credits_fail_before_any_model_call(make_orchestrator, primary, gateway):
    result, broadcaster = await _run(make_orchestrator(gateway), user_id="user-without-credits")

    assert result.status == RunStatus.FAILED
    assert result.error["insufficient_credits"] is True
    assert result.error["required_credits"] == 8
    assert primary.calls == []
    assert _phases(broadcaster) == [PipelinePhase.FAILED]


@pytest.mark.asyncio
async def test_balance_below_full_cost_fails_instead_of_delivering(make_orchestrator, gateway, ledger):
    # 9 credits pass the 8-credit preflight but cannot cover the 11-credit research run
    result, broadcaster = await _run(make_orchestrator(gateway), user_id="user-low")

    assert result.status == RunStatus.FAILED
    assert result.report == ""
    assert result.error["insufficient_credits"] is True
    assert result.error["current_balance"] == 9
    assert result.error["required_credits"] == 11
    _assert_single_terminal(broadcaster, PipelinePhase.FAILED)
    assert await ledger.check_balance("user-low") == 9
    assert ledger.entries == []


@pytest.mark.asyncio
async def test_quota_error_surfaces_as_failure(make_orchestrator, ledger):
    responses = default_responses()
    responses["interpret_task"] = http_error(429)
    secondary = FakeCompletionProvider("secondary")
    gateway = CompletionGateway([FakeCompletionProvider(responses=responses), secondary])

    result, broadcaster = await _run(make_orchestrator(gateway))

    assert result.status == RunStatus.FAILED
    assert result.error["status"] == 429
    assert "interpret_task" not in secondary.calls
    _assert_single_terminal(broadcaster, PipelinePhase.FAILED)
    assert await ledger.check_balance("user-1") == 100


@pytest.mark.asyncio
async def test_cancellation_mid_research(make_orchestrator, gateway, ledger):
    cancel = CancellationToken()

    def _cancel_after_search(query):
        cancel.cancel("user navigated away")
        return ProviderSearchResult(sources=[make_source(f"https://s.test/{len(query)}", 0.8)])

    providers = [FakeResearchProvider("search", _cancel_after_search)]
    result, broadcaster = await _run(make_orchestrator(gateway, providers), cancel=cancel)

    assert result.status == RunStatus.CANCELLED
    assert broadcaster.terminal_event.phase == PipelinePhase.FAILED
    assert result.error["cancelled"] is True
    assert ledger.entries == []


@pytest.mark.asyncio
async def test_empty_request_and_missing_providers(make_orchestrator, primary, gateway):
    result, _ = await _run(make_orchestrator(gateway), text="   \x00  ")
    assert result.status == RunStatus.FAILED
    assert result.error["reason"] == "Please enter a research request."
    assert primary.calls == []

    result, _ = await _run(make_orchestrator(CompletionGateway([])))
    assert result.status == RunStatus.FAILED
    assert result.error["reason"] == "The AI service is not configured."


@pytest.mark.asyncio
async def test_unexpected_exception_still_ends_with_failed_event(make_orchestrator, gateway, ledger):
    orchestrator = make_orchestrator(gateway)
    orchestrator.planner.plan = AsyncMock(side_effect=RuntimeError("boom"))

    result, broadcaster = await _run(orchestrator)

    assert result.status == RunStatus.FAILED
    assert result.error["reason"] == "Research failed due to an unexpected error"
    _assert_single_terminal(broadcaster, PipelinePhase.FAILED)
    assert ledger.entries == []


@pytest.mark.asyncio
async def test_run_agent_uses_named_profile(make_orchestrator, gateway, ledger):
    client = FakeAgentClient([AgentStatus("completed", output="Agent findings", tool_calls=2)])
    orchestrator = make_orchestrator(gateway, agent_client=client)

    result = await orchestrator.run_agent(DENIM_PROMPT, user_id="user-1", profile="agent-standard")

    assert result.status == RunStatus.COMPLETED
    assert result.report == "Agent findings"
    assert result.metadata.model_used_label == "agent:agent-standard"
    assert await ledger.check_balance("user-1") == 85
