"""
Polled agent runner
-------------------
Drives a long-running research agent that is submitted once and then polled
for status. The loop is an explicit state machine:

    SUBMITTING -> POLLING -> COMPLETED
                          -> FINALIZING -> COMPLETED | FAILED
                          -> FAILED

Each handler only returns the next state; the terminal event, the credit
deduction and the result are produced in one place after the machine stops.

Cost accrues progressively (base cost plus one credit per five tool calls,
capped at the run's max budget). Reaching the cap, or ``max_stall_count``
consecutive polls without observable progress, asks the agent to finalize
with partial results.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Tuple

import httpx
import structlog

from research_pipeline.core.config import BudgetProfile, PipelineConfig
from research_pipeline.core.exceptions import (
    PipelineError,
    ProviderError,
    RunCancelledError,
)
from research_pipeline.models.base import PHASE_ORDER, PipelinePhase
from research_pipeline.models.result import PipelineMetadata, PipelineResult, RunStatus
from research_pipeline.services.budget_gate import BudgetGate, CreditLedger, ProgressiveBudget
from research_pipeline.services.progress import CancellationToken, ProgressBroadcaster
from research_pipeline.utils.otel import otel_span
from research_pipeline.utils.retry import get_provider_retry_decorator
from research_pipeline.utils.text import sanitize_input, sanitize_output

logger = structlog.get_logger(__name__)

_agent_retry = get_provider_retry_decorator()

# Agent status -> (pipeline phase, progress, label)
STATUS_TO_PHASE: Dict[str, Tuple[PipelinePhase, int, str]] = {
    "queued": (PipelinePhase.INTERPRETING, 5, "planning"),
    "running": (PipelinePhase.RESEARCHING, 15, "searching"),
    "browsing": (PipelinePhase.RESEARCHING, 35, "browsing"),
    "analyzing": (PipelinePhase.STRUCTURING, 65, "validating"),
    "generating": (PipelinePhase.EXECUTING, 85, "generating"),
}
DEFAULT_STATUS_PHASE = (PipelinePhase.RESEARCHING, 20, "searching")

COMPLETED_STATUSES = frozenset({"completed", "done"})
FAILED_STATUSES = frozenset({"failed", "error"})


class AgentState(str, Enum):
    SUBMITTING = "submitting"
    POLLING = "polling"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (AgentState.COMPLETED, AgentState.FAILED)


@dataclass
class AgentStatus:
    status: str
    output: str = ""
    tool_calls: int = 0


class AgentClient(Protocol):
    async def submit(self, prompt: str, profile: str) -> str: ...

    async def poll(self, task_id: str) -> AgentStatus: ...

    async def finalize(self, task_id: str) -> str: ...

    async def cancel(self, task_id: str) -> None: ...


def _as_text(value: Any) -> str:
    return value if isinstance(value, str) else ""


def _as_count(value: Any) -> int:
    """Non-negative tool-call count; anything unparseable counts as zero."""
    try:
        return max(0, int(value or 0))
    except (TypeError, ValueError, OverflowError):
        return 0


class HttpAgentClient:
    """REST client for a task-based research agent (httpx)."""

    name = "agent"

    def __init__(self, api_key: str, base_url: str, timeout: float = 30.0) -> None:
        self.api_key = (api_key or "").strip()
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    @classmethod
    def from_config(cls, config: PipelineConfig) -> "HttpAgentClient":
        return cls(config.agent_api_key, config.agent_base_url, config.research_timeout_seconds)

    def is_configured(self) -> bool:
        return bool(self.api_key and self.base_url)

    @_agent_retry
    async def _send(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> httpx.Response:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.request(
                method,
                f"{self.base_url}{path}",
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                json=payload,
            )

    async def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            resp = await self._send(method, path, payload)
        except httpx.HTTPError as exc:
            raise ProviderError(f"Agent request failed: {exc}", provider=self.name) from exc
        if resp.status_code >= 400:
            raise ProviderError(
                f"Agent API error: {resp.status_code}",
                provider=self.name,
                status=resp.status_code,
            )
        if not resp.content:
            return {}
        try:
            data = resp.json()
        except ValueError as exc:
            raise ProviderError("Agent returned invalid JSON", provider=self.name, status=502) from exc
        return data if isinstance(data, dict) else {}

    async def submit(self, prompt: str, profile: str) -> str:
        data = await self._request(
            "POST",
            "/tasks",
            {
                "profile": profile,
                "prompt": prompt,
                "settings": {"max_iterations": 50, "enable_web_browsing": True, "enable_file_operations": False},
            },
        )
        task_id = data.get("task_id") or data.get("id")
        if not task_id:
            raise ProviderError("Agent did not return a task id", provider=self.name, status=502)
        return str(task_id)

    async def poll(self, task_id: str) -> AgentStatus:
        data = await self._request("GET", f"/tasks/{task_id}")
        return AgentStatus(
            status=(_as_text(data.get("status")) or "unknown").lower(),
            output=_as_text(data.get("output")) or _as_text(data.get("result")),
            tool_calls=_as_count(data.get("tool_calls_count") or data.get("iterations")),
        )

    async def finalize(self, task_id: str) -> str:
        data = await self._request("POST", f"/tasks/{task_id}/finalize")
        return _as_text(data.get("output")) or _as_text(data.get("partial_result"))

    async def cancel(self, task_id: str) -> None:
        await self._request("DELETE", f"/tasks/{task_id}")


@dataclass
class AgentRun:
    """Mutable state carried between FSM steps."""

    state: AgentState = AgentState.SUBMITTING
    task_id: Optional[str] = None
    status: str = ""
    tool_calls: int = 0
    output: str = ""
    polls: int = 0
    stall_count: int = 0
    finalize_reason: Optional[str] = None
    error: Optional[PipelineError] = None

    @property
    def finalized(self) -> bool:
        return self.finalize_reason is not None


SleepFn = Callable[[float], Awaitable[None]]


class PolledAgentRunner:
    """Runs one agent task to a single terminal event."""

    def __init__(
        self,
        client: AgentClient,
        ledger: CreditLedger,
        *,
        poll_interval: float = 3.0,
        max_stall_count: int = 10,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self.client = client
        self.ledger = ledger
        self.poll_interval = poll_interval
        self.max_stall_count = max(1, max_stall_count)
        self._sleep = sleep

    @classmethod
    def from_config(
        cls,
        config: PipelineConfig,
        ledger: CreditLedger,
        client: Optional[AgentClient] = None,
    ) -> "PolledAgentRunner":
        return cls(
            client or HttpAgentClient.from_config(config),
            ledger,
            poll_interval=config.poll_interval_seconds,
            max_stall_count=config.max_stall_count,
        )

    async def run(
        self,
        text: str,
        *,
        user_id: str,
        profile: BudgetProfile,
        max_budget: Optional[int] = None,
        broadcaster: Optional[ProgressBroadcaster] = None,
        cancel: Optional[CancellationToken] = None,
        max_input_length: int = 5000,
    ) -> PipelineResult:
        broadcaster = broadcaster or ProgressBroadcaster(uuid.uuid4().hex)
        cancel = cancel or CancellationToken()
        run_id = broadcaster.run_id
        started = time.monotonic()
        gate = BudgetGate(self.ledger, user_id)
        budget = ProgressiveBudget(profile, max_budget)
        run = AgentRun()
        prompt = sanitize_input(text, max_input_length)

        try:
            if not prompt:
                raise PipelineError("Empty request", user_message="Please enter a research request.")
            await gate.preflight(budget.base_cost)
            broadcaster.emit(
                PipelinePhase.INTERPRETING,
                f"Starting {profile.name} research",
                1,
                {"budget_confirmation": {"estimated_credits": budget.estimate(), "profile": profile.name}},
            )

            with otel_span("agent.run", {"run_id": run_id, "profile": profile.name}):
                while not run.state.is_terminal:
                    if run.state == AgentState.SUBMITTING:
                        run.state = await self._submit(run, prompt, profile, broadcaster, cancel)
                    elif run.state == AgentState.POLLING:
                        run.state = await self._poll(run, budget, profile, broadcaster, cancel)
                    else:
                        run.state = await self._finalize(run)

            # Single exit point
            if run.state == AgentState.FAILED:
                assert run.error is not None
                raise run.error

            deduction = await gate.deduct(budget.credits_used, f"Agent: {profile.name}")
            report = sanitize_output(run.output)
            status = RunStatus.PARTIAL if run.finalized else RunStatus.COMPLETED
            metadata = PipelineMetadata(
                duration_ms=int((time.monotonic() - started) * 1000),
                credits_used=budget.credits_used,
                model_used_label=f"agent:{profile.name}",
                new_balance=deduction.new_balance,
            )
            broadcaster.complete(
                self._completion_message(run),
                {
                    "credits_used": budget.credits_used,
                    "tool_calls": run.tool_calls,
                    "finalize_reason": run.finalize_reason,
                },
            )
            return PipelineResult(run_id=run_id, status=status, report=report, metadata=metadata)

        except PipelineError as exc:
            logger.warning(
                "Agent run failed",
                run_id=run_id,
                error=str(exc),
                error_type=type(exc).__name__,
                polls=run.polls,
            )
            broadcaster.fail(exc.user_message, exc.to_event_data())
            status = RunStatus.CANCELLED if isinstance(exc, RunCancelledError) else RunStatus.FAILED
            return PipelineResult(
                run_id=run_id,
                status=status,
                error=exc.to_event_data(),
                metadata=PipelineMetadata(duration_ms=int((time.monotonic() - started) * 1000)),
            )
        finally:
            broadcaster.ensure_terminal()

    # ────────────────────────────────────────────────────────────
    #  FSM steps
    # ────────────────────────────────────────────────────────────
    async def _submit(
        self,
        run: AgentRun,
        prompt: str,
        profile: BudgetProfile,
        broadcaster: ProgressBroadcaster,
        cancel: CancellationToken,
    ) -> AgentState:
        if cancel.is_cancelled:
            run.error = RunCancelledError()
            return AgentState.FAILED
        try:
            run.task_id = await self.client.submit(prompt, profile.name)
        except ProviderError as exc:
            run.error = exc
            return AgentState.FAILED
        logger.info("Agent task submitted", task_id=run.task_id, profile=profile.name)
        broadcaster.emit(PipelinePhase.INTERPRETING, "Submitted to research agent", 3, {"task_id": run.task_id})
        return AgentState.POLLING

    async def _poll(
        self,
        run: AgentRun,
        budget: ProgressiveBudget,
        profile: BudgetProfile,
        broadcaster: ProgressBroadcaster,
        cancel: CancellationToken,
    ) -> AgentState:
        await self._sleep(self.poll_interval)
        if cancel.is_cancelled:
            await self._cancel_remote(run)
            run.error = RunCancelledError()
            return AgentState.FAILED

        run.polls += 1
        try:
            status = await self.client.poll(run.task_id or "")
        except ProviderError as exc:
            run.stall_count += 1
            logger.warning("Agent poll failed", task_id=run.task_id, stall_count=run.stall_count, error=str(exc))
            return self._after_stall_check(run)

        if status.output:
            run.output = status.output

        if status.status != run.status or status.tool_calls > run.tool_calls:
            run.stall_count = 0
            run.status = status.status
            run.tool_calls = status.tool_calls
            budget.accrue(status.tool_calls)
            self._emit_status(run, budget, profile, broadcaster)
        else:
            run.stall_count += 1

        if status.status in COMPLETED_STATUSES:
            return AgentState.COMPLETED
        if status.status in FAILED_STATUSES:
            run.error = ProviderError(
                "Agent task failed",
                provider="agent",
                user_message="The research agent failed to complete the task",
            )
            return AgentState.FAILED
        if budget.exhausted:
            logger.info("Agent budget reached", task_id=run.task_id, credits_used=budget.credits_used)
            run.finalize_reason = "budget"
            return AgentState.FINALIZING
        return self._after_stall_check(run)

    def _after_stall_check(self, run: AgentRun) -> AgentState:
        if run.stall_count >= self.max_stall_count:
            logger.warning("Agent stalled", task_id=run.task_id, polls=run.polls, stall_count=run.stall_count)
            run.finalize_reason = "stall"
            return AgentState.FINALIZING
        return AgentState.POLLING

    async def _finalize(self, run: AgentRun) -> AgentState:
        try:
            partial = await self.client.finalize(run.task_id or "")
        except ProviderError as exc:
            logger.warning("Agent finalize failed", task_id=run.task_id, error=str(exc))
            partial = ""
        if partial:
            run.output = partial
        if run.output or run.finalize_reason == "budget":
            return AgentState.COMPLETED
        run.error = PipelineError(
            "Agent stalled without producing output",
            user_message="Task stalled without progress",
            details={"stalled": True, "polls": run.polls},
        )
        return AgentState.FAILED

    async def _cancel_remote(self, run: AgentRun) -> None:
        if not run.task_id:
            return
        try:
            await self.client.cancel(run.task_id)
        except ProviderError as exc:
            logger.info("Agent cancel request failed", task_id=run.task_id, error=str(exc))

    # ────────────────────────────────────────────────────────────
    #  Helpers
    # ────────────────────────────────────────────────────────────
    @staticmethod
    def _emit_status(
        run: AgentRun,
        budget: ProgressiveBudget,
        profile: BudgetProfile,
        broadcaster: ProgressBroadcaster,
    ) -> None:
        phase, progress, label = STATUS_TO_PHASE.get(run.status, DEFAULT_STATUS_PHASE)
        current = broadcaster.current_phase
        # Agents may report an earlier stage again; the stream never moves backwards
        if current is not None and not current.is_terminal and PHASE_ORDER[current] > PHASE_ORDER[phase]:
            phase = current
        broadcaster.emit(
            phase,
            f"{profile.name}: {run.status}",
            progress,
            {
                "agent_status": run.status,
                "stage": label,
                "tool_calls": run.tool_calls,
                "credits_used": budget.credits_used,
            },
        )

    @staticmethod
    def _completion_message(run: AgentRun) -> str:
        if run.finalize_reason == "budget":
            return "Budget limit reached - returning results"
        if run.finalize_reason == "stall":
            return "Research completed with partial results (stall detected)"
        return "Research complete"


__all__ = [
    "AgentClient",
    "AgentRun",
    "AgentState",
    "AgentStatus",
    "HttpAgentClient",
    "PolledAgentRunner",
    "STATUS_TO_PHASE",
]
