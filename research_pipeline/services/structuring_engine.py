"""
Structuring Engine
Turns the blueprint and research results into machine-usable structures
(tables, report outline, key findings) with one bounded-context structured
generation call. Any failure degrades to an empty ``StructuredOutput`` so
synthesis is never blocked; only quota errors and cancellation propagate.
"""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional, TYPE_CHECKING

import structlog

from research_pipeline.core.exceptions import MalformedOutputError, ProviderError
from research_pipeline.models.blueprint import ReasoningBlueprint
from research_pipeline.models.outcomes import Fallback, Outcome, Parsed
from research_pipeline.models.research import ResearchResult
from research_pipeline.models.structured import OutlineSection, StructuredOutput, TableSpec
from research_pipeline.models.task import TaskPlan
from research_pipeline.services.completion_gateway import CompletionGateway, function_tool
from research_pipeline.utils.token_budget import estimate_tokens, truncate_chars

if TYPE_CHECKING:
    from research_pipeline.services.progress import CancellationToken

logger = structlog.get_logger(__name__)


STRUCTURE_OUTPUTS_TOOL: Dict[str, Any] = function_tool(
    "structure_outputs",
    "Structure research into tables, reports, and findings",
    {
        "type": "object",
        "properties": {
            "tables": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "name": {"type": "string"},
                        "columns": {"type": "array", "items": {"type": "string"}},
                        "rows": {"type": "array", "items": {"type": "array", "items": {"type": "string"}}},
                    },
                },
            },
            "report_outline": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "section": {"type": "string"},
                        "content": {"type": "string"},
                        "key_points": {"type": "array", "items": {"type": "string"}},
                    },
                },
            },
            "key_findings": {"type": "array", "items": {"type": "string"}},
        },
        "required": ["tables", "report_outline", "key_findings"],
    },
)

SYSTEM_PROMPT = "You are a professional data structuring agent."


class StructuringEngine:
    def __init__(
        self,
        gateway: CompletionGateway,
        *,
        sources_per_question: int = 5,
        snippet_chars: int = 200,
    ) -> None:
        self.gateway = gateway
        self.sources_per_question = sources_per_question
        self.snippet_chars = snippet_chars

    def build_context(self, results: List[ResearchResult]) -> List[Dict[str, Any]]:
        """Bounded research context: top sources per question, truncated snippets."""
        return [
            {
                "question": r.question,
                "synthesis": r.synthesis,
                "sources": [
                    {
                        "title": s.title,
                        "snippet": truncate_chars(s.snippet, self.snippet_chars),
                        "url": s.url,
                    }
                    for s in r.sources[: self.sources_per_question]
                ],
            }
            for r in results
        ]

    def build_prompt(self, blueprint: ReasoningBlueprint, results: List[ResearchResult]) -> str:
        plan = blueprint.data_structure_plan
        return (
            "Transform research findings into structured outputs.\n\n"
            f"## Task Summary\n{blueprint.task_summary}\n\n"
            "## Required Outputs\n"
            f"- Tables: {', '.join(plan.tables) or 'None'}\n"
            f"- Documents: {', '.join(plan.documents) or 'None'}\n"
            f"- Presentations: {', '.join(plan.presentations) or 'None'}\n\n"
            f"## Research Findings\n{json.dumps(self.build_context(results), indent=2, ensure_ascii=False)}\n\n"
            "## Instructions\n"
            "1. Structured tables with columns and data rows (every row has one cell per column)\n"
            "2. Report outline with sections and key points\n"
            "3. Key findings as short statements\n\n"
            "Respond using the structure_outputs function."
        )

    async def structure(
        self,
        blueprint: ReasoningBlueprint,
        results: List[ResearchResult],
        task_plan: TaskPlan,
        *,
        cancel: Optional["CancellationToken"] = None,
    ) -> Outcome[StructuredOutput]:
        if not results and blueprint.data_structure_plan.is_empty():
            return Fallback(StructuredOutput(), reason="nothing to structure")

        prompt = self.build_prompt(blueprint, results)
        logger.debug("Structuring context built", context_tokens=estimate_tokens(prompt))
        try:
            args, _ = await self.gateway.complete_structured(
                SYSTEM_PROMPT,
                prompt,
                STRUCTURE_OUTPUTS_TOOL,
                max_tokens=4000,
                cancel=cancel,
            )
        except ProviderError as exc:
            if exc.is_quota_error:
                raise
            logger.warning("Structuring call failed, continuing without structure", error=str(exc))
            return Fallback(StructuredOutput(), reason=str(exc))
        except MalformedOutputError as exc:
            logger.warning("Structuring output unparseable, continuing without structure", error=str(exc))
            return Fallback(StructuredOutput(), reason=str(exc))

        structured = self._from_args(args)
        logger.info(
            "Structured output ready",
            deep=task_plan.deep_mode,
            tables=len(structured.tables),
            sections=len(structured.report_outline),
            findings=len(structured.key_findings),
        )
        return Parsed(structured)

    @staticmethod
    def _from_args(args: Dict[str, Any]) -> StructuredOutput:
        tables: List[TableSpec] = []
        for raw in args.get("tables") or []:
            if not isinstance(raw, dict):
                continue
            try:
                tables.append(
                    TableSpec(
                        name=str(raw.get("name") or f"Table {len(tables) + 1}"),
                        columns=[str(c) for c in raw.get("columns") or []],
                        rows=raw.get("rows") or [],
                    )
                )
            except ValueError:
                continue

        outline: List[OutlineSection] = []
        for raw in args.get("report_outline") or []:
            if isinstance(raw, dict) and raw.get("section"):
                outline.append(
                    OutlineSection(
                        section=str(raw["section"]),
                        content=str(raw.get("content") or ""),
                        key_points=[str(p) for p in raw.get("key_points") or []],
                    )
                )

        findings = [str(f).strip() for f in args.get("key_findings") or [] if str(f).strip()]
        return StructuredOutput(tables=tables, report_outline=outline, key_findings=findings)


__all__ = ["STRUCTURE_OUTPUTS_TOOL", "StructuringEngine"]
