"""
Reasoning Planner
Expands a ``TaskPlan`` into a ``ReasoningBlueprint``: research questions,
required data entities, the output-structure plan, logic steps, quality
criteria and risk flags.

The blueprint is always enhanced deterministically after the model call so
its contract holds regardless of what the model returned:
- personal/empathetic requests carry no forced tables, documents or decks;
- requested formats are matched by at least one structure-plan entry;
- ``risk_flags`` is never empty (``none`` sentinel).
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, TYPE_CHECKING

import structlog

from research_pipeline.core.exceptions import MalformedOutputError
from research_pipeline.models.base import (
    DataEntity,
    IntentCategory,
    OutputFormat,
    ResearchDepth,
    ResponseStyle,
    RiskFlag,
    unique,
)
from research_pipeline.models.blueprint import DataStructurePlan, ReasoningBlueprint
from research_pipeline.models.outcomes import Failed, Fallback, Outcome, Parsed
from research_pipeline.models.task import IntentClassification, TaskPlan
from research_pipeline.services.completion_gateway import CompletionGateway, function_tool
from research_pipeline.services.intent_classifier import response_style_for

if TYPE_CHECKING:
    from research_pipeline.services.progress import CancellationToken

logger = structlog.get_logger(__name__)


REASON_TASK_TOOL: Dict[str, Any] = function_tool(
    "reason_task",
    "Produce a reasoning blueprint describing what to research and how to shape results.",
    {
        "type": "object",
        "properties": {
            "task_summary": {"type": "string"},
            "reasoning_objectives": {"type": "array", "items": {"type": "string"}},
            "research_questions": {
                "type": "array",
                "items": {"type": "string"},
                "description": "Specific questions that must be answered through real-time research.",
            },
            "required_data_entities": {
                "type": "array",
                "items": {"type": "string", "enum": [e.value for e in DataEntity]},
            },
            "data_structure_plan": {
                "type": "object",
                "properties": {
                    "tables": {"type": "array", "items": {"type": "string"}},
                    "documents": {"type": "array", "items": {"type": "string"}},
                    "presentations": {"type": "array", "items": {"type": "string"}},
                    "web_outputs": {"type": "array", "items": {"type": "string"}},
                },
            },
            "logic_steps": {"type": "array", "items": {"type": "string"}},
            "quality_criteria": {"type": "array", "items": {"type": "string"}},
            "risk_flags": {
                "type": "array",
                "items": {"type": "string", "enum": [r.value for r in RiskFlag]},
            },
        },
        "required": ["task_summary", "reasoning_objectives", "logic_steps", "quality_criteria"],
    },
)

SYSTEM_PROMPT = """You are the reasoning layer of a research pipeline.
Think, plan and structure; do not execute.

- Break the task into specific, answerable research questions.
- Match output structure to the classified intent. Never force tables or
  reports onto personal questions.
- Never invent facts or sources.
- Flag risks honestly (stale data, unreliable sources, unclear scope).

Always respond using the reason_task function."""

# (keywords, entities) pairs scanned against the plan intent
ENTITY_KEYWORDS = [
    (("supplier", "sourcing"), (DataEntity.SUPPLIERS,)),
    (("trend", "forecast"), (DataEntity.TRENDS,)),
    (("brand", "competitor"), (DataEntity.BRANDS, DataEntity.COMPANIES)),
    (("material", "fabric"), (DataEntity.MATERIALS,)),
    (("market", "analysis"), (DataEntity.MARKETS, DataEntity.STATISTICS)),
    (("sustain", "certif"), (DataEntity.CERTIFICATIONS,)),
    (("price", "cost"), (DataEntity.PRICING,)),
    (("product",), (DataEntity.PRODUCTS,)),
    (("technology", "innovation"), (DataEntity.TECHNOLOGIES,)),
    (("regulation", "compliance", "law"), (DataEntity.REGULATIONS,)),
    (("campaign",), (DataEntity.CAMPAIGNS,)),
    (("event", "fashion week", "trade show"), (DataEntity.EVENTS,)),
]

FALLBACK_OBJECTIVES = ["Understand user intent", "Provide appropriate response"]
FALLBACK_LOGIC_STEPS = ["Classify intent", "Gather relevant information", "Structure response appropriately"]
FALLBACK_QUALITY = ["Response matches user intent", "Information is accurate and relevant"]

MIN_RELIABLE_QUESTION_COUNT = 2
AMBIGUOUS_SCOPE_CONFIDENCE = 0.6


def infer_data_entities(plan: TaskPlan) -> List[DataEntity]:
    intent = plan.intent.lower()
    found: List[DataEntity] = []
    for keywords, entities in ENTITY_KEYWORDS:
        if any(k in intent for k in keywords):
            found.extend(entities)
    return unique(found) or [DataEntity.OTHER]


def required_risk_flags(plan: TaskPlan) -> List[RiskFlag]:
    flags: List[RiskFlag] = []
    if plan.requires_real_time_research:
        flags.append(RiskFlag.DATA_FRESHNESS)
    if plan.research_depth == ResearchDepth.DEEP:
        flags.append(RiskFlag.FORMAT_COMPLEXITY)
    if plan.confidence < AMBIGUOUS_SCOPE_CONFIDENCE:
        flags.append(RiskFlag.AMBIGUOUS_SCOPE)
    return flags


class ReasoningPlanner:
    """Produces the ``ReasoningBlueprint`` for a plan."""

    def __init__(self, gateway: CompletionGateway) -> None:
        self.gateway = gateway

    async def plan(
        self,
        text: str,
        task_plan: TaskPlan,
        classification: Optional[IntentClassification] = None,
        *,
        cancel: Optional["CancellationToken"] = None,
    ) -> Outcome[ReasoningBlueprint]:
        """Return ``Parsed`` / ``Fallback`` blueprints, or ``Failed`` when research is
        required but no research question can be derived.

        Provider errors propagate; the gateway already tried its fallback chain.
        """
        intent = classification.primary_intent if classification else IntentCategory.GENERAL_FACTUAL
        user_prompt = (
            f"Intent classified as: {intent.value}\n"
            f"Task plan: {task_plan.model_dump_json(exclude={'confidence', 'estimated_credits'})}\n\n"
            f'User prompt: "{text}"\n\n'
            "Generate a domain-appropriate reasoning blueprint."
        )

        outcome: Outcome[ReasoningBlueprint]
        try:
            args, _ = await self.gateway.complete_structured(
                SYSTEM_PROMPT,
                user_prompt,
                REASON_TASK_TOOL,
                max_tokens=2000,
                cancel=cancel,
            )
            blueprint = self._from_args(args, text)
            outcome = Parsed(self.enhance(blueprint, task_plan, intent))
        except MalformedOutputError as exc:
            logger.warning("Blueprint unparseable, using fallback blueprint", error=str(exc))
            outcome = Fallback(
                self.enhance(self.fallback_blueprint(text, task_plan), task_plan, intent),
                reason=str(exc),
            )

        blueprint = outcome.value
        if task_plan.requires_real_time_research and not blueprint.research_questions:
            return Failed("Research is required but no research questions could be derived")
        logger.info(
            "Blueprint ready",
            degraded=isinstance(outcome, Fallback),
            questions=len(blueprint.research_questions),
            risk_flags=[r.value for r in blueprint.risk_flags],
        )
        return outcome

    def _from_args(self, args: Dict[str, Any], text: str) -> ReasoningBlueprint:
        try:
            return ReasoningBlueprint(
                task_summary=str(args.get("task_summary") or "").strip() or f"Process user query: {text[:100]}",
                objectives=[str(o) for o in args.get("reasoning_objectives") or []],
                research_questions=[str(q).strip() for q in args.get("research_questions") or [] if str(q).strip()],
                required_data_entities=args.get("required_data_entities") or [],
                data_structure_plan=DataStructurePlan(**(args.get("data_structure_plan") or {})),
                logic_steps=[str(s) for s in args.get("logic_steps") or []],
                quality_criteria=[str(c) for c in args.get("quality_criteria") or []],
                risk_flags=args.get("risk_flags") or [],
            )
        except (TypeError, ValueError) as exc:
            raise MalformedOutputError(f"Blueprint failed validation: {exc}") from exc

    def fallback_blueprint(self, text: str, task_plan: TaskPlan) -> ReasoningBlueprint:
        """Deterministic minimal blueprint built from the plan alone."""
        questions: List[str] = []
        if task_plan.requires_real_time_research:
            questions = list(task_plan.search_queries) or [f"What is the current information about: {text}"]
        return ReasoningBlueprint(
            task_summary=f"Process user query: {text[:100]}",
            objectives=list(FALLBACK_OBJECTIVES),
            research_questions=questions,
            required_data_entities=infer_data_entities(task_plan),
            data_structure_plan=DataStructurePlan(),
            logic_steps=list(FALLBACK_LOGIC_STEPS),
            quality_criteria=list(FALLBACK_QUALITY),
            risk_flags=[RiskFlag.NONE],
        )

    def enhance(
        self,
        blueprint: ReasoningBlueprint,
        task_plan: TaskPlan,
        intent: IntentCategory,
    ) -> ReasoningBlueprint:
        style = response_style_for(intent)
        structure = blueprint.data_structure_plan.model_copy(deep=True)

        if style == ResponseStyle.EMPATHETIC_ADVICE:
            structure = DataStructurePlan()
        else:
            outputs = set(task_plan.outputs)
            if outputs & {OutputFormat.EXCEL, OutputFormat.CSV} and not structure.tables:
                structure.tables.append("Primary data table with structured findings")
            if outputs & {OutputFormat.PDF, OutputFormat.DOCX} and not structure.documents:
                structure.documents.append("Analysis report document")
            if OutputFormat.PPTX in outputs and not structure.presentations:
                structure.presentations.append("Executive summary presentation")
            if OutputFormat.WEB in outputs and not structure.web_outputs:
                structure.web_outputs.append("Web summary page")

        questions = list(blueprint.research_questions)
        if not task_plan.requires_real_time_research:
            questions = []
        elif not questions:
            questions = list(task_plan.search_queries)

        risks = [r for r in blueprint.risk_flags if r != RiskFlag.NONE]
        risks.extend(required_risk_flags(task_plan))
        if task_plan.requires_real_time_research and len(questions) < MIN_RELIABLE_QUESTION_COUNT:
            risks.append(RiskFlag.SOURCE_RELIABILITY)

        return blueprint.model_copy(
            update={
                "objectives": blueprint.objectives or list(FALLBACK_OBJECTIVES),
                "research_questions": unique(questions),
                "required_data_entities": blueprint.required_data_entities or infer_data_entities(task_plan),
                "data_structure_plan": structure,
                "logic_steps": blueprint.logic_steps or list(FALLBACK_LOGIC_STEPS),
                "quality_criteria": blueprint.quality_criteria or list(FALLBACK_QUALITY),
                "risk_flags": unique(risks) or [RiskFlag.NONE],
                "response_style": style,
            }
        )


__all__ = [
    "REASON_TASK_TOOL",
    "ReasoningPlanner",
    "infer_data_entities",
    "required_risk_flags",
]
