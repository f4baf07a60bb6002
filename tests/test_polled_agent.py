from unittest.mock import AsyncMock

import httpx
import pytest

from research_pipeline.core.config import BudgetProfile, PipelineConfig
from research_pipeline.models.base import PHASE_ORDER, PipelinePhase
from research_pipeline.models.result import RunStatus
from research_pipeline.services.budget_gate import InMemoryCreditLedger
from research_pipeline.services.polled_agent import AgentStatus, HttpAgentClient, PolledAgentRunner
from research_pipeline.services.progress import CancellationToken, ProgressBroadcaster

from conftest import FakeAgentClient, http_error, no_sleep

LIGHT = PipelineConfig().budget_profile("agent-light")


def _runner(client, ledger, **kwargs):
    return PolledAgentRunner(client, ledger, poll_interval=0, sleep=no_sleep, **kwargs)


async def _run(runner, profile=LIGHT, **kwargs):
    broadcaster = ProgressBroadcaster("agent-run")
    result = await runner.run(
        "Map recycled denim mills in Portugal",
        user_id="user-1",
        profile=profile,
        broadcaster=broadcaster,
        **kwargs,
    )
    return result, broadcaster


def _assert_well_formed_stream(broadcaster):
    events = broadcaster.events
    terminal = [e for e in events if e.is_terminal]
    assert len(terminal) == 1 and events[-1] is terminal[0]
    progress = [e.progress for e in events]
    assert progress == sorted(progress)
    order = [PHASE_ORDER[e.phase] for e in events[:-1]]
    assert order == sorted(order)


@pytest.mark.asyncio
async def test_completed_task_deducts_accrued_credits(ledger):
    client = FakeAgentClient(
        [
            AgentStatus("running", tool_calls=0),
            AgentStatus("analyzing", tool_calls=3),
            AgentStatus("completed", output="Final agent report [1]", tool_calls=7),
        ]
    )
    result, broadcaster = await _run(_runner(client, ledger))

    assert result.status == RunStatus.COMPLETED
    assert result.report == "Final agent report"
    # base 8 + 7 // 5
    assert result.metadata.credits_used == 9
    assert result.metadata.model_used_label == "agent:agent-light"
    assert await ledger.check_balance("user-1") == 91
    assert ledger.entries[-1].description == "Agent: agent-light"
    first = broadcaster.events[0]
    assert first.data["budget_confirmation"]["estimated_credits"] == {"min": 8, "max": 25}
    _assert_well_formed_stream(broadcaster)


@pytest.mark.asyncio
async def test_earlier_agent_stage_does_not_move_phase_backwards(ledger):
    client = FakeAgentClient(
        [
            AgentStatus("analyzing", tool_calls=1),
            AgentStatus("running", tool_calls=2),
            AgentStatus("done", output="ok", tool_calls=3),
        ]
    )
    result, broadcaster = await _run(_runner(client, ledger))

    assert result.status == RunStatus.COMPLETED
    phases = [e.phase for e in broadcaster.events if e.data and "agent_status" in e.data]
    assert phases == [PipelinePhase.STRUCTURING] * 3
    _assert_well_formed_stream(broadcaster)


@pytest.mark.asyncio
async def test_stall_finalizes_after_exactly_max_stalled_polls(ledger):
    client = FakeAgentClient([AgentStatus("running", tool_calls=2)], finalize_output="Partial findings")
    result, broadcaster = await _run(_runner(client, ledger, max_stall_count=10))

    # one poll with progress, then ten without
    assert client.polls == 11
    assert client.finalized == 1
    assert result.status == RunStatus.PARTIAL
    assert result.report == "Partial findings"
    assert broadcaster.terminal_event.data["finalize_reason"] == "stall"
    assert await ledger.check_balance("user-1") == 100 - LIGHT.base_cost


@pytest.mark.asyncio
async def test_stall_without_output_fails_without_charge(ledger):
    client = FakeAgentClient([AgentStatus("running")])
    result, broadcaster = await _run(_runner(client, ledger, max_stall_count=3))

    assert client.polls == 4
    assert result.status == RunStatus.FAILED
    assert result.error["reason"] == "Task stalled without progress"
    assert broadcaster.terminal_event.phase == PipelinePhase.FAILED
    assert await ledger.check_balance("user-1") == 100
    assert ledger.entries == []


@pytest.mark.asyncio
async def test_stall_keeps_last_reported_output(ledger):
    client = FakeAgentClient([AgentStatus("generating", output="Draft so far", tool_calls=4)])
    result, _ = await _run(_runner(client, ledger, max_stall_count=2))

    assert result.status == RunStatus.PARTIAL
    assert result.report == "Draft so far"


@pytest.mark.asyncio
async def test_poll_errors_count_as_stalls(ledger):
    client = FakeAgentClient([http_error(503, "agent")])
    result, _ = await _run(_runner(client, ledger, max_stall_count=5))

    assert client.polls == 5
    assert result.status == RunStatus.FAILED


@pytest.mark.asyncio
async def test_budget_ceiling_finalizes_with_partial_results(ledger):
    profile = BudgetProfile(name="tiny", base_cost=5, max_budget=7)
    client = FakeAgentClient(
        [
            AgentStatus("running", tool_calls=0),
            AgentStatus("browsing", tool_calls=5),
            AgentStatus("browsing", tool_calls=10),
            AgentStatus("browsing", tool_calls=50),
        ]
    )
    result, broadcaster = await _run(_runner(client, ledger), profile=profile)

    assert client.polls == 3
    assert client.finalized == 1
    assert result.status == RunStatus.PARTIAL
    assert result.metadata.credits_used == 7
    assert broadcaster.terminal_event.data["finalize_reason"] == "budget"
    assert await ledger.check_balance("user-1") == 93


@pytest.mark.asyncio
async def test_requested_max_budget_lowers_ceiling(ledger):
    client = FakeAgentClient(
        [AgentStatus("running", tool_calls=0), AgentStatus("browsing", tool_calls=5)],
        finalize_output="Cut short",
    )
    result, _ = await _run(_runner(client, ledger), max_budget=9)

    assert result.status == RunStatus.PARTIAL
    assert result.metadata.credits_used == 9
    assert result.report == "Cut short"


@pytest.mark.asyncio
async def test_failed_agent_status_is_not_charged(ledger):
    client = FakeAgentClient([AgentStatus("running"), AgentStatus("failed")])
    result, broadcaster = await _run(_runner(client, ledger))

    assert result.status == RunStatus.FAILED
    assert result.error["reason"] == "The research agent failed to complete the task"
    assert ledger.entries == []
    _assert_well_formed_stream(broadcaster)


@pytest.mark.asyncio
async def test_submit_error_fails_before_polling(ledger):
    client = FakeAgentClient([AgentStatus("running")], submit_error=http_error(500, "agent"))
    result, _ = await _run(_runner(client, ledger))

    assert result.status == RunStatus.FAILED
    assert client.polls == 0


@pytest.mark.asyncio
async def test_insufficient_credits_rejected_before_submit():
    ledger = InMemoryCreditLedger({"user-1": 3})
    client = FakeAgentClient([AgentStatus("completed", output="never")])
    result, broadcaster = await _run(_runner(client, ledger))

    assert result.status == RunStatus.FAILED
    assert result.error["insufficient_credits"] is True
    assert client.polls == 0
    assert len(broadcaster.events) == 1


@pytest.mark.asyncio
async def test_accrued_charge_above_balance_fails_the_run():
    ledger = InMemoryCreditLedger({"user-1": 8})
    client = FakeAgentClient([AgentStatus("completed", output="Full report", tool_calls=7)])
    result, broadcaster = await _run(_runner(client, ledger))

    assert result.status == RunStatus.FAILED
    assert result.report == ""
    assert result.error["required_credits"] == 9
    assert result.error["current_balance"] == 8
    assert ledger.entries == []
    assert broadcaster.terminal_event.phase == PipelinePhase.FAILED
    _assert_well_formed_stream(broadcaster)


@pytest.mark.asyncio
async def test_cancel_mid_run_cancels_remote_task(ledger):
    client = FakeAgentClient([AgentStatus("running", tool_calls=1)])
    cancel = CancellationToken()

    async def _sleep(_):
        if client.polls >= 2:
            cancel.cancel()

    runner = PolledAgentRunner(client, ledger, poll_interval=0, sleep=_sleep)
    result, broadcaster = await _run(runner, cancel=cancel)

    assert result.status == RunStatus.CANCELLED
    assert client.cancelled == 1
    assert client.polls == 2
    assert ledger.entries == []
    assert broadcaster.terminal_event.phase == PipelinePhase.FAILED


def _http_client(*payloads):
    client = HttpAgentClient("agent-key", "https://agent.test")
    client._send = AsyncMock(side_effect=[httpx.Response(200, json=p) for p in payloads])
    return client


@pytest.mark.asyncio
async def test_http_client_coerces_malformed_poll_fields():
    client = _http_client(
        {"status": "running", "tool_calls_count": "n/a", "output": {"draft": 1}},
        {"status": None, "iterations": "4", "result": "Draft"},
        {"output": ["partial"], "partial_result": "Partial text"},
    )

    first = await client.poll("t1")
    assert (first.status, first.output, first.tool_calls) == ("running", "", 0)

    second = await client.poll("t1")
    assert (second.status, second.output, second.tool_calls) == ("unknown", "Draft", 4)

    assert await client.finalize("t1") == "Partial text"


@pytest.mark.asyncio
async def test_malformed_poll_payload_still_ends_in_a_result(ledger):
    client = _http_client(
        {"task_id": "t1"},
        {"status": "running", "tool_calls_count": "n/a"},
        {"status": "completed", "output": "Done", "iterations": "6"},
    )
    result, broadcaster = await _run(_runner(client, ledger))

    assert result.status == RunStatus.COMPLETED
    assert result.report == "Done"
    # base 8 + 6 // 5
    assert result.metadata.credits_used == 9
    _assert_well_formed_stream(broadcaster)
