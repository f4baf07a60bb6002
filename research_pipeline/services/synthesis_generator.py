"""
Synthesis Generator
Writes the final narrative report from the blueprint, per-question research,
key findings and structured tables, then compiles the caller-facing source
list.

Formatting rules applied after generation:
- inline numeric citation markers are removed;
- tables never interleave with prose: any table the model wrote inline is
  stripped and well-formed structured tables are appended as trailing
  summaries; malformed tables are omitted.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Dict, List, Optional, TYPE_CHECKING

import structlog

from research_pipeline.core.exceptions import PipelineError
from research_pipeline.models.base import Domain, ResponseStyle
from research_pipeline.models.blueprint import ReasoningBlueprint
from research_pipeline.models.research import ResearchResult, ResearchSource
from research_pipeline.models.structured import StructuredOutput, TableSpec
from research_pipeline.models.task import IntentClassification, TaskPlan
from research_pipeline.services.completion_gateway import CompletionGateway, CompletionResult
from research_pipeline.services.intent_classifier import sanitize_for_intent
from research_pipeline.services.source_deduplicator import SourceDeduplicator
from research_pipeline.utils.token_budget import trim_text_to_tokens

if TYPE_CHECKING:
    from research_pipeline.services.progress import CancellationToken

logger = structlog.get_logger(__name__)


BASE_SYSTEM_PROMPT = """You are a professional analyst writing the final answer.

Rules:
- Focus on actionable insights, not generic overviews
- Include specific data points, names and metrics from the research
- No emojis, no fluff, no introductory platitudes
- Never write inline citation markers such as [1] or [2]
- Do not write tables; summary tables are appended separately
- If data is missing or uncertain, say so rather than inventing it"""

STYLE_INSTRUCTIONS: Dict[ResponseStyle, str] = {
    ResponseStyle.STRUCTURED_ANALYSIS: (
        "Structure with clear headers: key findings, supporting data, implications, next actions."
    ),
    ResponseStyle.STEP_BY_STEP_GUIDE: (
        "Use numbered steps, include code or examples where relevant, end with troubleshooting notes."
    ),
    ResponseStyle.EMPATHETIC_ADVICE: (
        "Use warm, empathetic paragraphs. No headers, no templates, no industry framing. "
        "Acknowledge feelings first, offer practical support second."
    ),
    ResponseStyle.CREATIVE_OUTPUT: (
        "Produce the creative piece itself; structure serves the creative goal."
    ),
    ResponseStyle.FACTUAL_SUMMARY: (
        "Answer directly and concisely, add relevant context, no unnecessary elaboration."
    ),
}

DOMAIN_PROMPTS: Dict[Domain, str] = {
    Domain.FASHION: "Prioritize runway trends, silhouettes, designer collections and ready-to-wear developments.",
    Domain.BEAUTY: "Prioritize formulations, cosmetic and skincare trends, brand strategies and consumer preferences.",
    Domain.SUSTAINABILITY: (
        "Prioritize circularity, sustainable materials, supply chain transparency, certifications "
        "and environmental impact."
    ),
    Domain.TEXTILE: (
        "Prioritize fibers, mills, material innovation, textile sourcing, MOQ requirements "
        "and manufacturing capabilities."
    ),
    Domain.LIFESTYLE: "Prioritize consumer behavior, wellness trends, luxury lifestyle and cross-category signals.",
    Domain.SUPPLY_CHAIN: "Prioritize supplier names, locations, capabilities, lead times, MOQs and certifications.",
    Domain.MARKET: "Prioritize market sizing, growth rates, competitive positioning and forecast signals.",
    Domain.TECHNOLOGY: "Prioritize digital innovation, AI applications, startups and emerging technologies.",
}

SUMMARY_TABLES_HEADER = "## Summary Tables"


@dataclass
class SynthesisOutput:
    report: str
    sources: List[ResearchSource]
    completion: CompletionResult


# ────────────────────────────────────────────────────────────
#  Rendering helpers
# ────────────────────────────────────────────────────────────
def _escape_cell(value: str) -> str:
    return " ".join(str(value).split()).replace("|", "\\|")


def render_table(table: TableSpec) -> Optional[str]:
    """Markdown table, or ``None`` when the table is malformed."""
    if not table.is_well_formed() or not table.rows:
        return None
    header = "| " + " | ".join(_escape_cell(c) for c in table.columns) + " |"
    divider = "| " + " | ".join("---" for _ in table.columns) + " |"
    rows = ["| " + " | ".join(_escape_cell(c) for c in row) + " |" for row in table.rows]
    return "\n".join([f"### {table.name}", "", header, divider, *rows])


def strip_inline_tables(text: str) -> str:
    """Remove markdown table blocks (runs of lines starting with ``|``)."""
    kept = [line for line in (text or "").splitlines() if not line.lstrip().startswith("|")]
    return "\n".join(kept)


def append_tables(report: str, tables: List[TableSpec]) -> str:
    rendered = [r for r in (render_table(t) for t in tables) if r]
    dropped = len(tables) - len(rendered)
    if dropped:
        logger.info("Malformed tables omitted from report", dropped=dropped)
    if not rendered:
        return report
    return report.rstrip() + "\n\n" + SUMMARY_TABLES_HEADER + "\n\n" + "\n\n".join(rendered) + "\n"


def build_system_prompt(style: ResponseStyle, domains: List[Domain]) -> str:
    parts = [BASE_SYSTEM_PROMPT, STYLE_INSTRUCTIONS.get(style, "")]
    if style != ResponseStyle.EMPATHETIC_ADVICE:
        for domain in domains:
            extra = DOMAIN_PROMPTS.get(domain)
            if extra:
                parts.append(f"DOMAIN: {domain.value.upper()}\n{extra}")
    return "\n\n".join(p for p in parts if p)


# ────────────────────────────────────────────────────────────
#  Generator
# ────────────────────────────────────────────────────────────
class SynthesisGenerator:
    def __init__(
        self,
        gateway: CompletionGateway,
        *,
        urls_per_question: int = 3,
        sources_per_question: int = 5,
        max_sources: int = 25,
        synthesis_tokens_per_question: int = 600,
        deduplicator: Optional[SourceDeduplicator] = None,
    ) -> None:
        self.gateway = gateway
        self.urls_per_question = urls_per_question
        self.sources_per_question = sources_per_question
        self.max_sources = max_sources
        self.synthesis_tokens_per_question = synthesis_tokens_per_question
        self.deduplicator = deduplicator or SourceDeduplicator()

    def build_user_prompt(
        self,
        text: str,
        blueprint: ReasoningBlueprint,
        results: List[ResearchResult],
        structured: StructuredOutput,
    ) -> str:
        sections = [f"User request: {text}", f"Task: {blueprint.task_summary}"]
        if results:
            findings = []
            for r in results:
                urls = ", ".join(s.url for s in r.sources[: self.urls_per_question]) or "none"
                synthesis = trim_text_to_tokens(r.synthesis or "", self.synthesis_tokens_per_question) or "No synthesis available"
                findings.append(f"### {r.question}\n{synthesis}\nSources: {urls}")
            sections.append("Research Findings:\n" + "\n\n".join(findings))
        if structured.key_findings:
            sections.append("Key Findings:\n" + "\n".join(f"- {f}" for f in structured.key_findings))
        if structured.report_outline:
            outline = "\n".join(
                f"- {s.section}: {'; '.join(s.key_points) or s.content}" for s in structured.report_outline
            )
            sections.append(f"Suggested outline:\n{outline}")
        if structured.tables:
            sections.append(
                "Tables (appended after your text, do not reproduce them):\n"
                + json.dumps([t.name for t in structured.tables], ensure_ascii=False)
            )
        return "\n\n".join(sections)

    def compile_sources(self, results: List[ResearchResult]) -> List[ResearchSource]:
        """Union of the top sources per question, deduplicated and ranked."""
        pool: List[ResearchSource] = []
        for r in results:
            pool.extend(r.sources[: self.sources_per_question])
        return self.deduplicator.merge(pool, self.max_sources)

    async def generate(
        self,
        text: str,
        task_plan: TaskPlan,
        blueprint: ReasoningBlueprint,
        results: List[ResearchResult],
        structured: StructuredOutput,
        classification: Optional[IntentClassification] = None,
        *,
        cancel: Optional["CancellationToken"] = None,
    ) -> SynthesisOutput:
        completion = await self.gateway.complete(
            build_system_prompt(blueprint.response_style, list(task_plan.domains)),
            self.build_user_prompt(text, blueprint, results, structured),
            max_tokens=4000,
            temperature=0.4,
            cancel=cancel,
            operation="synthesis",
        )
        prose = sanitize_for_intent(strip_inline_tables(completion.content), classification)
        if not prose:
            raise PipelineError(
                "Synthesis returned an empty report",
                user_message="The report could not be generated. Please try again.",
                details={"provider": completion.provider},
            )
        report = append_tables(prose, structured.tables)
        sources = self.compile_sources(results)
        logger.info(
            "Report synthesized",
            provider=completion.provider,
            report_chars=len(report),
            sources=len(sources),
        )
        return SynthesisOutput(report=report, sources=sources, completion=completion)


__all__ = [
    "DOMAIN_PROMPTS",
    "SynthesisGenerator",
    "SynthesisOutput",
    "append_tables",
    "build_system_prompt",
    "render_table",
    "strip_inline_tables",
]
