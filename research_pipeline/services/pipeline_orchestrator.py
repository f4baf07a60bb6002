"""
Pipeline Orchestrator
---------------------
Sequences one research run through its phases:

    classify -> interpreting -> reasoning -> researching -> structuring
             -> executing (synthesis) -> completed

An ambiguous classification short-circuits straight to ``completed`` with a
clarifying question. ``failed`` may follow any phase. Every run ends with
exactly one terminal event: the whole state machine sits inside a single
``try/finally`` that guarantees it.

Credits are checked before any paid work and deducted once, only after the
run has succeeded.
"""

from __future__ import annotations

import time
import uuid
from typing import Any, Dict, List, Optional

import structlog

from research_pipeline.core.config import PipelineConfig
from research_pipeline.core.exceptions import (
    PipelineError,
    ProviderError,
    RunCancelledError,
)
from research_pipeline.logging_config import bind_run_context, clear_run_context
from research_pipeline.models.base import PipelinePhase
from research_pipeline.models.blueprint import ReasoningBlueprint
from research_pipeline.models.outcomes import Failed, Fallback, unwrap
from research_pipeline.models.research import ResearchReport, ResearchResult
from research_pipeline.models.result import PipelineMetadata, PipelineResult, RunStatus
from research_pipeline.models.structured import StructuredOutput
from research_pipeline.models.task import IntentClassification, TaskPlan
from research_pipeline.services.budget_gate import BudgetGate, CreditLedger
from research_pipeline.services.completion_gateway import CompletionGateway
from research_pipeline.services.intent_classifier import (
    IntentClassifier,
    needs_clarification,
    sanitize_for_intent,
)
from research_pipeline.services.polled_agent import PolledAgentRunner
from research_pipeline.services.progress import CancellationToken, ProgressBroadcaster
from research_pipeline.services.reasoning_planner import ReasoningPlanner
from research_pipeline.services.research_executor import ResearchExecutor
from research_pipeline.services.structuring_engine import StructuringEngine
from research_pipeline.services.synthesis_generator import SynthesisGenerator
from research_pipeline.services.task_interpreter import TaskInterpreter
from research_pipeline.utils.otel import otel_span
from research_pipeline.utils.text import sanitize_input

logger = structlog.get_logger(__name__)

# Progress bands per phase (start, end)
PROGRESS_BANDS: Dict[PipelinePhase, tuple] = {
    PipelinePhase.INTERPRETING: (10, 20),
    PipelinePhase.REASONING: (25, 35),
    PipelinePhase.RESEARCHING: (40, 65),
    PipelinePhase.STRUCTURING: (70, 85),
    PipelinePhase.EXECUTING: (90, 95),
}


class PipelineOrchestrator:
    """Top-level state machine for one research run."""

    def __init__(
        self,
        config: PipelineConfig,
        ledger: CreditLedger,
        *,
        gateway: Optional[CompletionGateway] = None,
        research_executor: Optional[ResearchExecutor] = None,
        classifier: Optional[IntentClassifier] = None,
        interpreter: Optional[TaskInterpreter] = None,
        planner: Optional[ReasoningPlanner] = None,
        structuring: Optional[StructuringEngine] = None,
        synthesis: Optional[SynthesisGenerator] = None,
        agent_runner: Optional[PolledAgentRunner] = None,
    ) -> None:
        self.config = config
        self.ledger = ledger
        self.gateway = gateway or CompletionGateway.from_config(config)
        self.research_executor = research_executor or ResearchExecutor.from_config(config)
        self.classifier = classifier or IntentClassifier(self.gateway, config.ambiguity_threshold)
        self.interpreter = interpreter or TaskInterpreter(self.gateway)
        self.planner = planner or ReasoningPlanner(self.gateway)
        self.structuring = structuring or StructuringEngine(
            self.gateway,
            sources_per_question=config.structuring_sources_per_question,
            snippet_chars=config.structuring_snippet_chars,
        )
        self.synthesis = synthesis or SynthesisGenerator(
            self.gateway,
            urls_per_question=config.synthesis_urls_per_question,
            sources_per_question=config.final_sources_per_question,
            max_sources=config.max_sources,
        )
        self.agent_runner = agent_runner or PolledAgentRunner.from_config(config, ledger)

    async def aclose(self) -> None:
        await self.research_executor.aclose()

    # ────────────────────────────────────────────────────────────
    #  Full pipeline
    # ────────────────────────────────────────────────────────────
    async def run(
        self,
        text: str,
        *,
        user_id: str,
        deep_mode: bool = False,
        has_history: bool = False,
        broadcaster: Optional[ProgressBroadcaster] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> PipelineResult:
        broadcaster = broadcaster or ProgressBroadcaster(uuid.uuid4().hex)
        cancel = cancel or CancellationToken()
        run_id = broadcaster.run_id
        started = time.monotonic()
        bind_run_context(run_id, user_id)
        gate = BudgetGate(self.ledger, user_id)

        # Populated as phases complete, so a failure result carries what exists
        state: Dict[str, Any] = {}
        try:
            with otel_span("pipeline.run", {"run_id": run_id, "deep_mode": deep_mode}):
                return await self._run_phases(
                    text,
                    run_id=run_id,
                    deep_mode=deep_mode,
                    has_history=has_history,
                    gate=gate,
                    broadcaster=broadcaster,
                    cancel=cancel,
                    started=started,
                    state=state,
                )
        except PipelineError as exc:
            return self._failed(run_id, exc, broadcaster, started, state)
        except Exception as exc:
            logger.exception("Unexpected pipeline error", run_id=run_id)
            wrapped = PipelineError(
                f"Unexpected error: {exc}",
                user_message="Research failed due to an unexpected error",
            )
            return self._failed(run_id, wrapped, broadcaster, started, state)
        finally:
            broadcaster.ensure_terminal()
            clear_run_context()

    async def _run_phases(
        self,
        text: str,
        *,
        run_id: str,
        deep_mode: bool,
        has_history: bool,
        gate: BudgetGate,
        broadcaster: ProgressBroadcaster,
        cancel: CancellationToken,
        started: float,
        state: Dict[str, Any],
    ) -> PipelineResult:
        costs = self.config.costs
        prompt = sanitize_input(text, self.config.max_input_length)
        if not prompt:
            raise PipelineError("Empty request", user_message="Please enter a research request.")
        if not self.gateway.is_configured():
            raise PipelineError(
                "No completion providers configured",
                user_message="The AI service is not configured.",
            )

        estimate = {
            "min": costs.total(deep_mode, with_research=False),
            "max": costs.total(deep_mode, with_research=True),
        }
        balance = await gate.preflight(estimate["min"])

        # Classification (never a hard failure)
        cancel.raise_if_cancelled()
        classification = await self.classifier.classify(prompt, cancel=cancel)
        state["classification"] = classification
        if needs_clarification(classification, self.config.ambiguity_threshold):
            return await self._clarify(run_id, prompt, classification, gate, broadcaster, cancel, started)

        # Interpreting
        cancel.raise_if_cancelled()
        self._enter(
            broadcaster,
            PipelinePhase.INTERPRETING,
            "Understanding your request",
            {
                "budget_confirmation": {"estimated_credits": estimate, "current_balance": balance},
                "intent": classification.primary_intent.value,
            },
        )
        plan_outcome = await self.interpreter.interpret(
            prompt, classification, has_history=has_history, deep_mode=deep_mode, cancel=cancel
        )
        task_plan = unwrap(plan_outcome)
        state["task_plan"] = task_plan
        self._finish(
            broadcaster,
            PipelinePhase.INTERPRETING,
            "Task interpreted",
            {
                "domains": [d.value for d in task_plan.domains],
                "outputs": [o.value for o in task_plan.outputs],
                "requires_research": task_plan.requires_real_time_research,
                "degraded": isinstance(plan_outcome, Fallback),
            },
        )

        # Reasoning
        cancel.raise_if_cancelled()
        self._enter(broadcaster, PipelinePhase.REASONING, "Planning the research")
        blueprint_outcome = await self.planner.plan(prompt, task_plan, classification, cancel=cancel)
        if isinstance(blueprint_outcome, Failed):
            raise PipelineError(
                blueprint_outcome.reason,
                user_message="Could not derive research questions for this request",
            )
        blueprint = blueprint_outcome.value
        state["blueprint"] = blueprint
        self._finish(
            broadcaster,
            PipelinePhase.REASONING,
            "Research plan ready",
            {
                "research_questions": list(blueprint.research_questions),
                "risk_flags": [r.value for r in blueprint.risk_flags],
                "degraded": isinstance(blueprint_outcome, Fallback),
            },
        )

        # Researching
        report: Optional[ResearchReport] = None
        results: List[ResearchResult] = []
        if task_plan.requires_real_time_research:
            cancel.raise_if_cancelled()
            report = await self._research(blueprint, task_plan, broadcaster, cancel)
            results = report.results
        else:
            logger.info("Research not required, skipping research phase", run_id=run_id)

        # Structuring
        cancel.raise_if_cancelled()
        self._enter(broadcaster, PipelinePhase.STRUCTURING, "Structuring findings")
        structured_outcome = await self.structuring.structure(blueprint, results, task_plan, cancel=cancel)
        structured: StructuredOutput = unwrap(structured_outcome)
        state["structured"] = structured
        self._finish(
            broadcaster,
            PipelinePhase.STRUCTURING,
            "Findings structured",
            {"tables": len(structured.tables), "degraded": isinstance(structured_outcome, Fallback)},
        )

        # Executing (synthesis)
        cancel.raise_if_cancelled()
        self._enter(broadcaster, PipelinePhase.EXECUTING, "Writing the report")
        output = await self.synthesis.generate(
            prompt, task_plan, blueprint, results, structured, classification, cancel=cancel
        )

        credits = costs.total(task_plan.deep_mode, with_research=task_plan.requires_real_time_research)
        deduction = await gate.deduct(credits, self._charge_description(task_plan))
        confidence = report.stats.average_confidence if report is not None else task_plan.confidence
        metadata = PipelineMetadata(
            duration_ms=int((time.monotonic() - started) * 1000),
            credits_used=credits,
            source_count=len(output.sources),
            confidence=confidence,
            deep_mode=task_plan.deep_mode,
            model_used_label=output.completion.label,
            new_balance=deduction.new_balance,
        )
        broadcaster.complete(
            "Research complete",
            {
                "credits_used": credits,
                "source_count": metadata.source_count,
                "model_used": metadata.model_used_label,
            },
        )
        logger.info(
            "Pipeline completed",
            run_id=run_id,
            credits_used=credits,
            duration_ms=metadata.duration_ms,
            sources=metadata.source_count,
        )
        return PipelineResult(
            run_id=run_id,
            status=RunStatus.COMPLETED,
            report=output.report,
            sources=output.sources,
            structured_output=structured,
            metadata=metadata,
            classification=classification,
            task_plan=task_plan,
            blueprint=blueprint,
        )

    async def _research(
        self,
        blueprint: ReasoningBlueprint,
        task_plan: TaskPlan,
        broadcaster: ProgressBroadcaster,
        cancel: CancellationToken,
    ) -> ResearchReport:
        questions = list(blueprint.research_questions)
        start, end = PROGRESS_BANDS[PipelinePhase.RESEARCHING]
        self._enter(
            broadcaster,
            PipelinePhase.RESEARCHING,
            f"Researching {len(questions)} question(s)",
            {"questions": questions, "deep": task_plan.deep_mode},
        )

        async def _on_question_done(done: int, total: int, result: ResearchResult) -> None:
            progress = start + int((end - start) * done / max(1, total))
            broadcaster.emit(
                PipelinePhase.RESEARCHING,
                f"Researched {done}/{total}: {result.question[:80]}",
                progress,
                {"sources": len(result.sources), "confidence": result.confidence},
            )

        max_sources = self.config.max_sources_deep if task_plan.deep_mode else self.config.max_sources
        report = await self.research_executor.execute(
            questions,
            deep=task_plan.deep_mode,
            max_sources=max_sources,
            domain_filter=self.config.research_domain_filter,
            cancel=cancel,
            on_question_done=_on_question_done,
        )
        return report

    async def _clarify(
        self,
        run_id: str,
        prompt: str,
        classification: IntentClassification,
        gate: BudgetGate,
        broadcaster: ProgressBroadcaster,
        cancel: CancellationToken,
        started: float,
    ) -> PipelineResult:
        logger.info(
            "Ambiguous request, asking for clarification",
            run_id=run_id,
            confidence=classification.confidence,
        )
        message = await self.classifier.generate_clarification_response(classification, prompt, cancel=cancel)
        message = sanitize_for_intent(message, classification)
        credits = self.config.costs.clarification
        deduction = await gate.deduct(credits, "Clarification")
        broadcaster.complete(
            "Clarification needed",
            {
                "clarification": True,
                "clarifying_question": classification.clarifying_question,
                "credits_used": credits,
            },
        )
        return PipelineResult(
            run_id=run_id,
            status=RunStatus.CLARIFICATION,
            report=message,
            metadata=PipelineMetadata(
                duration_ms=int((time.monotonic() - started) * 1000),
                credits_used=credits,
                confidence=classification.confidence,
                new_balance=deduction.new_balance,
            ),
            classification=classification,
        )

    # ────────────────────────────────────────────────────────────
    #  Polled agent
    # ────────────────────────────────────────────────────────────
    async def run_agent(
        self,
        text: str,
        *,
        user_id: str,
        profile: Optional[str] = None,
        max_budget: Optional[int] = None,
        broadcaster: Optional[ProgressBroadcaster] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> PipelineResult:
        """Delegate a run to the long-running research agent."""
        broadcaster = broadcaster or ProgressBroadcaster(uuid.uuid4().hex)
        bind_run_context(broadcaster.run_id, user_id)
        try:
            return await self.agent_runner.run(
                text,
                user_id=user_id,
                profile=self.config.budget_profile(profile),
                max_budget=max_budget,
                broadcaster=broadcaster,
                cancel=cancel,
                max_input_length=self.config.max_input_length,
            )
        finally:
            clear_run_context()

    # ────────────────────────────────────────────────────────────
    #  Helpers
    # ────────────────────────────────────────────────────────────
    @staticmethod
    def _enter(
        broadcaster: ProgressBroadcaster,
        phase: PipelinePhase,
        message: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        logger.info("Phase started", run_id=broadcaster.run_id, phase=phase.value)
        broadcaster.emit(phase, message, PROGRESS_BANDS[phase][0], data)

    @staticmethod
    def _finish(
        broadcaster: ProgressBroadcaster,
        phase: PipelinePhase,
        message: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        broadcaster.emit(phase, message, PROGRESS_BANDS[phase][1], data)

    @staticmethod
    def _charge_description(task_plan: TaskPlan) -> str:
        mode = "deep" if task_plan.deep_mode else "standard"
        return f"Research pipeline ({mode})"

    @staticmethod
    def _failed(
        run_id: str,
        exc: PipelineError,
        broadcaster: ProgressBroadcaster,
        started: float,
        state: Dict[str, Any],
    ) -> PipelineResult:
        cancelled = isinstance(exc, RunCancelledError)
        log = logger.info if cancelled else logger.warning
        log(
            "Pipeline failed",
            run_id=run_id,
            phase=broadcaster.current_phase.value if broadcaster.current_phase else None,
            error=str(exc),
            error_type=type(exc).__name__,
            status=exc.status if isinstance(exc, ProviderError) else None,
        )
        broadcaster.fail(exc.user_message, exc.to_event_data())
        return PipelineResult(
            run_id=run_id,
            status=RunStatus.CANCELLED if cancelled else RunStatus.FAILED,
            metadata=PipelineMetadata(duration_ms=int((time.monotonic() - started) * 1000)),
            classification=state.get("classification"),
            task_plan=state.get("task_plan"),
            blueprint=state.get("blueprint"),
            error=exc.to_event_data(),
        )


__all__ = ["PROGRESS_BANDS", "PipelineOrchestrator"]
